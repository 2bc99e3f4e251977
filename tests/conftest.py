import json
from unittest.mock import MagicMock

import pytest

from app import create_app
from assistant import AssistantService
from config import TestingConfig


class FakeResponse:
    """Stands in for a google-genai GenerateContentResponse."""

    def __init__(self, payload):
        self.parsed = None
        self.text = payload if isinstance(payload, str) else json.dumps(payload)


def model_reply(payload):
    return FakeResponse(payload)


@pytest.fixture
def ai_client():
    client = MagicMock()
    client.models.generate_content.return_value = model_reply({'answer': 'Yes, you can donate every 8 weeks.'})
    return client


@pytest.fixture
def assistant(ai_client):
    return AssistantService(ai_client, 'test-model')


@pytest.fixture
def app(tmp_path, assistant):
    class Config(TestingConfig):
        SESSION_FILE_DIR = str(tmp_path / 'sessions')

    app = create_app(Config)
    app.extensions['bloodlink.assistant'] = assistant
    yield app


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def store(app):
    return app.extensions['bloodlink.store']


@pytest.fixture
def identity(app):
    return app.extensions['bloodlink.identity']


def donor(name, blood_type, city, **extra):
    data = {'name': name, 'bloodType': blood_type, 'city': city}
    data.update(extra)
    return data
