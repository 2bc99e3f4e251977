import json
import logging
import os

from flask import current_app, session

logger = logging.getLogger(__name__)

LANGUAGES = ('en', 'bn')
FALLBACK_LANGUAGE = 'en'
LOCALES_DIR = os.path.join(os.path.dirname(os.path.abspath(__file__)), 'locales')


class Translator:
    """Key -> string lookup over one table per language.

    Missing keys fall back to the English table, then to the key itself.
    ``{{name}}`` placeholders are replaced from ``replacements``.
    """

    def __init__(self, tables):
        self.tables = tables

    @classmethod
    def load(cls, directory=LOCALES_DIR):
        tables = {}
        for language in LANGUAGES:
            path = os.path.join(directory, f'{language}.json')
            with open(path, encoding='utf-8') as f:
                tables[language] = json.load(f)
            logger.debug(f"Loaded {len(tables[language])} strings for '{language}'")
        return cls(tables)

    def translate(self, key, language, replacements=None):
        text = (self.tables.get(language, {}).get(key)
                or self.tables.get(FALLBACK_LANGUAGE, {}).get(key)
                or key)
        for placeholder, value in (replacements or {}).items():
            text = text.replace('{{' + placeholder + '}}', str(value))
        return text


class LanguagePreference:
    """The user's language choice, kept in a mapping that survives reloads."""

    STORAGE_KEY = 'language'

    def __init__(self, storage, default='bn'):
        self.storage = storage
        self.default = default

    @property
    def language(self):
        stored = self.storage.get(self.STORAGE_KEY)
        return stored if stored in LANGUAGES else self.default

    def toggle(self):
        new_language = 'bn' if self.language == 'en' else 'en'
        self.storage[self.STORAGE_KEY] = new_language
        return new_language

    @property
    def toggle_label(self):
        return 'Ban' if self.language == 'en' else 'Eng'


def current_preference():
    return LanguagePreference(session, current_app.config.get('DEFAULT_LANGUAGE', 'bn'))


def t(key, **replacements):
    """Translate ``key`` into the current request's language."""
    translator = current_app.extensions['bloodlink.translator']
    return translator.translate(key, current_preference().language, replacements)
