import os
from datetime import timedelta
from dotenv import load_dotenv

load_dotenv()

BASE_DIR = os.path.dirname(os.path.abspath(__file__))


class Config:
    SECRET_KEY = os.environ.get('SECRET_KEY', 'dev_secret_key')  # change for production
    SQLALCHEMY_DATABASE_URI = os.environ.get('DATABASE_URL', 'sqlite:///bloodlink.db')
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    DEBUG = False

    # Server-side session
    SESSION_TYPE = 'filesystem'
    SESSION_FILE_DIR = os.environ.get('SESSION_FILE_DIR', os.path.join(BASE_DIR, 'flask_session'))
    SESSION_PERMANENT = True
    PERMANENT_SESSION_LIFETIME = timedelta(days=1)
    SESSION_COOKIE_SAMESITE = 'Lax'
    SESSION_COOKIE_SECURE = os.environ.get('SESSION_COOKIE_SECURE', 'false').lower() == 'true'
    SESSION_COOKIE_HTTPONLY = True

    CORS_ORIGINS = [o.strip() for o in os.environ.get(
        'CORS_ORIGINS', 'http://localhost:3000,http://localhost:5500').split(',') if o.strip()]

    # Backends: 'local' / 'sql' keep everything in the SQL database,
    # 'firebase' / 'firestore' talk to the managed services.
    AUTH_BACKEND = os.environ.get('AUTH_BACKEND', 'local')
    DOCUMENT_STORE = os.environ.get('DOCUMENT_STORE', 'sql')
    FIREBASE_CREDENTIALS = os.environ.get('FIREBASE_CREDENTIALS', os.path.join(BASE_DIR, 'firebase_config.json'))
    FIREBASE_API_KEY = os.environ.get('FIREBASE_API_KEY')
    USERS_COLLECTION = 'users'

    # AI assistant
    GEMINI_API_KEY = os.environ.get('GEMINI_API_KEY')
    AI_MODEL = os.environ.get('AI_MODEL', 'gemini-2.0-flash')
    DEFAULT_SEARCH_RADIUS_KM = 50

    # Mail
    MAIL_ENABLED = os.environ.get('MAIL_ENABLED', 'true').lower() == 'true'
    EMAIL_USER = os.environ.get('EMAIL_USER')
    EMAIL_PASS = os.environ.get('EMAIL_PASS')
    SMTP_HOST = os.environ.get('SMTP_HOST', 'smtp.gmail.com')
    SMTP_PORT = int(os.environ.get('SMTP_PORT', 465))

    TOKEN_TTL_HOURS = 24
    OTP_TTL_SECONDS = 300
    PASSWORD_RESET_TTL_HOURS = 1
    DEFAULT_LANGUAGE = 'bn'
    LOCALES_DIR = os.environ.get('LOCALES_DIR', os.path.join(BASE_DIR, 'locales'))
    LOG_LEVEL = os.environ.get('LOG_LEVEL', 'INFO')


class DevelopmentConfig(Config):
    DEBUG = True
    MAIL_ENABLED = False


class TestingConfig(Config):
    TESTING = True
    SECRET_KEY = 'test-secret-key'
    SQLALCHEMY_DATABASE_URI = 'sqlite://'
    AUTH_BACKEND = 'local'
    DOCUMENT_STORE = 'sql'
    MAIL_ENABLED = False
    GEMINI_API_KEY = 'test-key'
    LOG_LEVEL = 'DEBUG'
