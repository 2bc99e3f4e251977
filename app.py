import os
import logging
from flask import Flask, jsonify
from flask_cors import CORS
from flask_session import Session
import firebase_admin
from firebase_admin import credentials

from config import Config, DevelopmentConfig
from database import db
from store import create_store
from identity import AuthClient, create_identity_backend
from i18n import Translator
from assistant import AssistantService
from user_session import SessionRegistry, UserSession
from route import api

logger = logging.getLogger(__name__)


# ------------------------- #
# Firebase Admin SDK
# ------------------------- #
def init_firebase(app):
    """Initialize firebase_admin once, when a Firebase backend is selected."""
    if app.config['AUTH_BACKEND'] != 'firebase' and app.config['DOCUMENT_STORE'] != 'firestore':
        return
    try:
        firebase_admin.get_app()
        return
    except ValueError:
        pass
    cred_path = app.config['FIREBASE_CREDENTIALS']
    logger.info(f"Loading Firebase config from {cred_path}")
    firebase_admin.initialize_app(credentials.Certificate(cred_path))


# ------------------------- #
# Flask Setup
# ------------------------- #
def create_app(config_object=Config):
    app = Flask(__name__)
    app.config.from_object(config_object)

    logging.basicConfig(
        level=app.config['LOG_LEVEL'],
        format='%(asctime)s %(levelname)s %(name)s: %(message)s'
    )

    CORS(app, supports_credentials=True, origins=app.config['CORS_ORIGINS'])
    Session(app)

    db.init_app(app)
    with app.app_context():
        db.create_all()

    init_firebase(app)

    store = create_store(app)
    backend = create_identity_backend(app)
    collection = app.config['USERS_COLLECTION']

    def new_user_session(id_token, refresh_token):
        return UserSession(AuthClient(backend), store, collection).start(id_token, refresh_token)

    app.extensions['bloodlink.store'] = store
    app.extensions['bloodlink.identity'] = backend
    app.extensions['bloodlink.translator'] = Translator.load(app.config['LOCALES_DIR'])
    app.extensions['bloodlink.assistant'] = AssistantService.from_config(app.config)
    app.extensions['bloodlink.sessions'] = SessionRegistry(
        new_user_session, app.config['PERMANENT_SESSION_LIFETIME'].total_seconds())

    app.register_blueprint(api, url_prefix='/api')

    @app.route('/api/health')
    def health():
        return jsonify({'status': 'healthy'})

    @app.errorhandler(404)
    def not_found(error):
        return jsonify({'error': 'Not found'}), 404

    @app.errorhandler(500)
    def internal_error(error):
        logger.error(f"Internal error: {error}")
        return jsonify({'error': 'Internal server error'}), 500

    logger.info(f"BloodLink started (auth={app.config['AUTH_BACKEND']}, store={app.config['DOCUMENT_STORE']})")
    return app


# ------------------------- #
if __name__ == '__main__':
    app = create_app(DevelopmentConfig)
    app.run(debug=True, host='0.0.0.0', port=int(os.environ.get('PORT', 5000)))
