"""Identity provider boundary.

``AuthClient`` plays the role of the browser auth SDK for one user session: it
tracks the signed-in user and notifies listeners on every auth state change.
The actual sign-in work is done by one of two backends:

    * ``FirebaseIdentityBackend`` - Identity Toolkit REST API for the
      password/phone flows, ``firebase_admin.auth`` for token checks and
      account deletion.
    * ``LocalIdentityBackend`` - users in the SQL database, Werkzeug password
      hashes and PyJWT tokens. Used for development and tests.

Failures surface as ``AuthError`` carrying a provider code and a readable
message.
"""

import itertools
import logging
import re
import secrets
import threading
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

import jwt
import requests
from werkzeug.security import generate_password_hash, check_password_hash

from database import db, User, OtpCode
from notifications import send_email, send_sms
from store import Subscription

logger = logging.getLogger(__name__)

AUTH_MESSAGES = {
    'EMAIL_EXISTS': 'The email address is already in use by another account.',
    'EMAIL_NOT_FOUND': 'Email or password is incorrect.',
    'INVALID_PASSWORD': 'Email or password is incorrect.',
    'INVALID_LOGIN_CREDENTIALS': 'Email or password is incorrect.',
    'INVALID_EMAIL': 'The email address is badly formatted.',
    'MISSING_PASSWORD': 'A password is required.',
    'WEAK_PASSWORD': 'Password should be at least 6 characters.',
    'INVALID_PHONE_NUMBER': 'The phone number is not valid.',
    'MISSING_RECAPTCHA_TOKEN': 'The reCAPTCHA challenge was not completed.',
    'INVALID_SESSION_INFO': 'The verification request is invalid. Please request a new code.',
    'INVALID_CODE': 'The verification code is invalid.',
    'SESSION_EXPIRED': 'The verification code has expired. Please request a new one.',
    'INVALID_OOB_CODE': 'The password reset link is invalid or has expired.',
    'EXPIRED_OOB_CODE': 'The password reset link is invalid or has expired.',
    'INVALID_ID_TOKEN': 'Your session has expired. Please sign in again.',
    'TOKEN_EXPIRED': 'Your session has expired. Please sign in again.',
    'USER_NOT_FOUND': 'No account was found for this user.',
    'USER_DISABLED': 'This account has been disabled.',
    'CREDENTIAL_TOO_OLD_LOGIN_AGAIN': 'Please sign in again before deleting your account.',
    'NO_CURRENT_USER': 'No user is currently signed in.',
    'NETWORK_REQUEST_FAILED': 'The authentication service could not be reached.',
}

EMAIL_RE = re.compile(r'^[^@\s]+@[^@\s]+\.[^@\s]+$')
PHONE_RE = re.compile(r'^\+[1-9]\d{6,14}$')
MIN_PASSWORD_LENGTH = 6


class AuthError(Exception):
    def __init__(self, code, message=None):
        # REST errors look like "WEAK_PASSWORD : Password should be at least 6 characters"
        code = code.split(' : ')[0].strip()
        self.code = code
        self.message = message or AUTH_MESSAGES.get(code, 'Authentication failed.')
        super().__init__(self.message)


@dataclass
class AuthUser:
    uid: str
    email: Optional[str] = None
    phone_number: Optional[str] = None
    id_token: Optional[str] = None
    refresh_token: Optional[str] = None
    is_new_user: bool = False

    def to_dict(self):
        return {'uid': self.uid, 'email': self.email, 'phone': self.phone_number}


def normalize_phone(phone):
    """Strip the usual formatting from a phone number: '+1 (555) 000-0000' -> '+15550000000'."""
    return re.sub(r'[\s\-().]', '', phone or '')


# ------------------------- #
# Local backend
# ------------------------- #
class LocalIdentityBackend:
    def __init__(self, app):
        self.app = app

    def _issue_token(self, user):
        config = self.app.config
        return jwt.encode({
            'user_id': user.id,
            'email': user.email,
            'exp': datetime.utcnow() + timedelta(hours=config['TOKEN_TTL_HOURS'])
        }, config['SECRET_KEY'], algorithm='HS256')

    def _auth_user(self, user, is_new_user=False):
        return AuthUser(uid=user.id, email=user.email, phone_number=user.phone,
                        id_token=self._issue_token(user), is_new_user=is_new_user)

    def create_user(self, email, password):
        email = (email or '').strip().lower()
        if not EMAIL_RE.match(email):
            raise AuthError('INVALID_EMAIL')
        if not password:
            raise AuthError('MISSING_PASSWORD')
        if len(password) < MIN_PASSWORD_LENGTH:
            raise AuthError('WEAK_PASSWORD')

        with self.app.app_context():
            if User.query.filter_by(email=email).first():
                raise AuthError('EMAIL_EXISTS')
            user = User(id=str(uuid.uuid4()), email=email, password=generate_password_hash(password))
            db.session.add(user)
            db.session.commit()
            logger.info(f"Created user {user.id}")
            return self._auth_user(user, is_new_user=True)

    def sign_in_with_password(self, email, password):
        email = (email or '').strip().lower()
        with self.app.app_context():
            user = User.query.filter_by(email=email).first()
            if not user or not user.password or not check_password_hash(user.password, password or ''):
                raise AuthError('INVALID_LOGIN_CREDENTIALS')
            return self._auth_user(user)

    def send_password_reset(self, email):
        email = (email or '').strip().lower()
        with self.app.app_context():
            user = User.query.filter_by(email=email).first()
            if not user or not user.password:
                # same response whether or not the address is registered
                return
            config = self.app.config
            code = jwt.encode({
                'sub': user.id,
                'purpose': 'password_reset',
                'pwd': user.password[-8:],
                'exp': datetime.utcnow() + timedelta(hours=config['PASSWORD_RESET_TTL_HOURS'])
            }, config['SECRET_KEY'], algorithm='HS256')
            send_email(user.email, "BloodLink password reset",
                       f"Use this code to reset your BloodLink password:\n\n{code}\n\n"
                       "If you did not ask for a reset, ignore this email.")

    def confirm_password_reset(self, code, new_password):
        if not new_password or len(new_password) < MIN_PASSWORD_LENGTH:
            raise AuthError('WEAK_PASSWORD')
        try:
            data = jwt.decode(code, self.app.config['SECRET_KEY'], algorithms=['HS256'])
        except jwt.ExpiredSignatureError:
            raise AuthError('EXPIRED_OOB_CODE')
        except jwt.InvalidTokenError:
            raise AuthError('INVALID_OOB_CODE')
        if data.get('purpose') != 'password_reset':
            raise AuthError('INVALID_OOB_CODE')

        with self.app.app_context():
            user = db.session.get(User, data['sub'])
            # a code stops working once the password it was issued for has changed
            if not user or not user.password or user.password[-8:] != data.get('pwd'):
                raise AuthError('INVALID_OOB_CODE')
            user.password = generate_password_hash(new_password)
            db.session.commit()
            return user.email

    def send_verification_code(self, phone, recaptcha_token):
        if not recaptcha_token:
            raise AuthError('MISSING_RECAPTCHA_TOKEN')
        phone = normalize_phone(phone)
        if not PHONE_RE.match(phone):
            raise AuthError('INVALID_PHONE_NUMBER')

        code = f"{secrets.randbelow(10 ** 6):06d}"
        with self.app.app_context():
            otp = OtpCode(
                id=str(uuid.uuid4()),
                phone=phone,
                code_hash=generate_password_hash(code),
                expires_at=datetime.utcnow() + timedelta(seconds=self.app.config['OTP_TTL_SECONDS'])
            )
            db.session.add(otp)
            db.session.commit()
            send_sms(phone, f"Your BloodLink verification code is {code}")
            return otp.id

    def sign_in_with_phone(self, verification_id, code):
        with self.app.app_context():
            otp = db.session.get(OtpCode, verification_id or '')
            if not otp or otp.used:
                raise AuthError('INVALID_SESSION_INFO')
            if otp.expires_at < datetime.utcnow():
                raise AuthError('SESSION_EXPIRED')
            if not check_password_hash(otp.code_hash, (code or '').strip()):
                raise AuthError('INVALID_CODE')
            otp.used = True

            user = User.query.filter_by(phone=otp.phone).first()
            is_new_user = user is None
            if is_new_user:
                user = User(id=str(uuid.uuid4()), phone=otp.phone)
                db.session.add(user)
            db.session.commit()
            return self._auth_user(user, is_new_user=is_new_user)

    def verify_id_token(self, id_token):
        try:
            data = jwt.decode(id_token, self.app.config['SECRET_KEY'], algorithms=['HS256'])
        except jwt.ExpiredSignatureError:
            raise AuthError('TOKEN_EXPIRED')
        except jwt.InvalidTokenError:
            raise AuthError('INVALID_ID_TOKEN')
        if 'user_id' not in data:
            raise AuthError('INVALID_ID_TOKEN')

        with self.app.app_context():
            user = db.session.get(User, data['user_id'])
            if not user:
                raise AuthError('USER_NOT_FOUND')
            return AuthUser(uid=user.id, email=user.email, phone_number=user.phone, id_token=id_token)

    def refresh(self, refresh_token):
        raise AuthError('INVALID_ID_TOKEN')

    def delete_user(self, uid):
        with self.app.app_context():
            user = db.session.get(User, uid)
            if not user:
                raise AuthError('USER_NOT_FOUND')
            if user.phone:
                OtpCode.query.filter_by(phone=user.phone).delete()
            db.session.delete(user)
            db.session.commit()
            logger.info(f"Deleted user {uid}")


# ------------------------- #
# Firebase backend
# ------------------------- #
IDENTITY_URL = 'https://identitytoolkit.googleapis.com/v1/accounts:{method}'
SECURE_TOKEN_URL = 'https://securetoken.googleapis.com/v1/token'


class FirebaseIdentityBackend:
    def __init__(self, api_key, http=None, timeout=10):
        if not api_key:
            raise ValueError("FIREBASE_API_KEY is required for the firebase auth backend")
        self.api_key = api_key
        self.http = http or requests.Session()
        self.timeout = timeout

    def _post(self, url, payload):
        try:
            response = self.http.post(url, params={'key': self.api_key}, json=payload, timeout=self.timeout)
        except requests.RequestException as e:
            logger.error(f"Identity request to {url} failed: {e}")
            raise AuthError('NETWORK_REQUEST_FAILED') from e

        try:
            data = response.json()
        except ValueError:
            data = {}
        if response.status_code != 200:
            raise AuthError(data.get('error', {}).get('message', 'UNKNOWN'))
        return data

    def _call(self, method, payload):
        return self._post(IDENTITY_URL.format(method=method), payload)

    def create_user(self, email, password):
        data = self._call('signUp', {'email': email, 'password': password, 'returnSecureToken': True})
        return AuthUser(uid=data['localId'], email=data.get('email'), id_token=data['idToken'],
                        refresh_token=data.get('refreshToken'), is_new_user=True)

    def sign_in_with_password(self, email, password):
        data = self._call('signInWithPassword', {'email': email, 'password': password, 'returnSecureToken': True})
        return AuthUser(uid=data['localId'], email=data.get('email'), id_token=data['idToken'],
                        refresh_token=data.get('refreshToken'))

    def send_password_reset(self, email):
        try:
            self._call('sendOobCode', {'requestType': 'PASSWORD_RESET', 'email': email})
        except AuthError as e:
            if e.code != 'EMAIL_NOT_FOUND':
                raise

    def confirm_password_reset(self, code, new_password):
        data = self._call('resetPassword', {'oobCode': code, 'newPassword': new_password})
        return data.get('email')

    def send_verification_code(self, phone, recaptcha_token):
        if not recaptcha_token:
            raise AuthError('MISSING_RECAPTCHA_TOKEN')
        data = self._call('sendVerificationCode', {
            'phoneNumber': normalize_phone(phone),
            'recaptchaToken': recaptcha_token
        })
        return data['sessionInfo']

    def sign_in_with_phone(self, verification_id, code):
        data = self._call('signInWithPhoneNumber', {'sessionInfo': verification_id, 'code': code})
        return AuthUser(uid=data['localId'], phone_number=data.get('phoneNumber'), id_token=data['idToken'],
                        refresh_token=data.get('refreshToken'), is_new_user=data.get('isNewUser', False))

    def verify_id_token(self, id_token):
        from firebase_admin import auth, exceptions
        try:
            decoded = auth.verify_id_token(id_token)
        except auth.ExpiredIdTokenError:
            raise AuthError('TOKEN_EXPIRED')
        except (ValueError, exceptions.FirebaseError) as e:
            logger.info(f"Rejected id token: {e}")
            raise AuthError('INVALID_ID_TOKEN')
        return AuthUser(uid=decoded['uid'], email=decoded.get('email'),
                        phone_number=decoded.get('phone_number'), id_token=id_token)

    def refresh(self, refresh_token):
        data = self._post(SECURE_TOKEN_URL, {'grant_type': 'refresh_token', 'refresh_token': refresh_token})
        user = self.verify_id_token(data['id_token'])
        user.refresh_token = data.get('refresh_token', refresh_token)
        return user

    def delete_user(self, uid):
        from firebase_admin import auth, exceptions
        try:
            auth.delete_user(uid)
        except auth.UserNotFoundError:
            raise AuthError('USER_NOT_FOUND')
        except exceptions.FirebaseError as e:
            logger.error(f"Deleting auth user {uid} failed: {e}")
            raise AuthError('UNKNOWN', str(e))


def create_identity_backend(app):
    backend = app.config.get('AUTH_BACKEND', 'local')
    if backend == 'firebase':
        return FirebaseIdentityBackend(app.config.get('FIREBASE_API_KEY'))
    if backend == 'local':
        return LocalIdentityBackend(app)
    raise ValueError(f"Unknown AUTH_BACKEND: {backend}")


# ------------------------- #
# Auth client
# ------------------------- #
class AuthClient:
    """Per-session view of the identity provider.

    Listeners registered with on_auth_state_changed() are called with the
    current user (or None) once the client has started, and again on every
    sign-in, sign-out or deletion.
    """

    def __init__(self, backend):
        self.backend = backend
        self.current_user = None
        self.ready = False
        self._lock = threading.RLock()
        self._ids = itertools.count(1)
        self._listeners = {}

    def on_auth_state_changed(self, callback):
        token = next(self._ids)
        with self._lock:
            self._listeners[token] = callback
            ready, user = self.ready, self.current_user
        if ready:
            callback(user)

        def cancel():
            with self._lock:
                self._listeners.pop(token, None)
        return Subscription(cancel)

    def start(self, id_token=None, refresh_token=None):
        """Resolve the persisted session, if any, and announce the initial state."""
        user = None
        if id_token:
            try:
                user = self.backend.verify_id_token(id_token)
            except AuthError as e:
                logger.info(f"Stored session rejected ({e.code})")
                if refresh_token:
                    try:
                        user = self.backend.refresh(refresh_token)
                    except AuthError as refresh_error:
                        logger.info(f"Token refresh failed ({refresh_error.code})")
        if user and refresh_token and not user.refresh_token:
            user.refresh_token = refresh_token
        self._set_user(user)
        return user

    def _set_user(self, user):
        with self._lock:
            self.current_user = user
            self.ready = True
            listeners = list(self._listeners.values())
        for callback in listeners:
            callback(user)

    def sign_in_with_email_and_password(self, email, password):
        user = self.backend.sign_in_with_password(email, password)
        self._set_user(user)
        return user

    def create_user_with_email_and_password(self, email, password):
        user = self.backend.create_user(email, password)
        self._set_user(user)
        return user

    def send_password_reset_email(self, email):
        self.backend.send_password_reset(email)

    def confirm_password_reset(self, code, new_password):
        return self.backend.confirm_password_reset(code, new_password)

    def send_phone_verification(self, phone, recaptcha_token):
        return self.backend.send_verification_code(phone, recaptcha_token)

    def confirm_phone_code(self, verification_id, code):
        user = self.backend.sign_in_with_phone(verification_id, code)
        self._set_user(user)
        return user

    def sign_out(self):
        self._set_user(None)

    def delete_current_user(self):
        user = self.current_user
        if user is None:
            raise AuthError('NO_CURRENT_USER')
        self.backend.delete_user(user.uid)
        self._set_user(None)
