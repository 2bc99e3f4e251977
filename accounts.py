"""Sign-up / sign-in flows behind the auth form."""

import logging

logger = logging.getLogger(__name__)


def default_name(email):
    local_part = (email or '').split('@')[0]
    return local_part or 'New User'


def sign_up(auth_client, store, email, password, collection='users'):
    """Create the identity and write the minimal profile stub for it."""
    user = auth_client.create_user_with_email_and_password(email, password)
    store.set(collection, user.uid, {
        'uid': user.uid,
        'email': user.email,
        'name': default_name(user.email),
    })
    logger.info(f"Signed up {user.uid}")
    return user


def sign_in(auth_client, email, password):
    return auth_client.sign_in_with_email_and_password(email, password)


def request_phone_code(auth_client, phone, recaptcha_token):
    """First phone step: send the one-time code, return the verification id."""
    return auth_client.send_phone_verification(phone, recaptcha_token)


def confirm_phone_code(auth_client, store, verification_id, code, collection='users'):
    """Second phone step: check the code and merge the phone into the profile."""
    user = auth_client.confirm_phone_code(verification_id, code)
    stub = {'uid': user.uid, 'phone': user.phone_number}
    existing = store.get(collection, user.uid)
    if not existing or not existing.get('name'):
        stub['name'] = f"User {user.uid[:5]}"
    store.set(collection, user.uid, stub, merge=True)
    return user


def send_password_reset(auth_client, email):
    auth_client.send_password_reset_email(email)


def confirm_password_reset(auth_client, code, new_password):
    return auth_client.confirm_password_reset(code, new_password)
