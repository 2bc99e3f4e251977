import logging
import uuid
from functools import wraps

from flask import Blueprint, current_app, jsonify, request, session
from pydantic import ValidationError

import accounts
from assistant import AssistantError
from directory import ALL_BLOOD_TYPES, RevealNotAllowed, UnknownDonor
from i18n import current_preference, t
from identity import AuthError
from profile_form import (BLOOD_TYPES, LocationError, ProfileValidationError,
                          form_defaults, locate, save_profile, validate_profile)
from user_session import serialize_profile

logger = logging.getLogger(__name__)

api = Blueprint("api", __name__)


# ------------------------- #
# Session helpers
# ------------------------- #
def get_user_session():
    """Live UserSession for the browser session making this request."""
    sid = session.get('sid')
    if not sid:
        sid = str(uuid.uuid4())
        session['sid'] = sid
        session.permanent = True
    registry = current_app.extensions['bloodlink.sessions']
    user_session = registry.get(sid, session.get('id_token'), session.get('refresh_token'))

    user = user_session.user
    if user is None and 'id_token' in session:
        forget_user()
    elif user is not None and user.id_token and user.id_token != session.get('id_token'):
        remember_user(user)
    return user_session


def remember_user(user):
    session['id_token'] = user.id_token
    if user.refresh_token:
        session['refresh_token'] = user.refresh_token


def forget_user():
    session.pop('id_token', None)
    session.pop('refresh_token', None)


def collection():
    return current_app.config['USERS_COLLECTION']


def login_required(f):
    @wraps(f)
    def decorated(*args, **kwargs):
        user_session = get_user_session()
        if not user_session.is_authenticated:
            return jsonify({'error': t('not_authenticated')}), 401
        return f(user_session, *args, **kwargs)
    return decorated


def dashboard_view(f):
    """Resolve <view_id> to one of the caller's open dashboards."""
    @wraps(f)
    @login_required
    def decorated(user_session, view_id, *args, **kwargs):
        dashboard = user_session.dashboard(view_id)
        if dashboard is None:
            return jsonify({'error': t('view_not_found')}), 404
        return f(dashboard, *args, **kwargs)
    return decorated


def json_object():
    """Request body when it is a JSON object, otherwise an empty dict."""
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


def text_field(data, key):
    value = data.get(key)
    return value if isinstance(value, str) else None


def auth_failure(e, title_key='auth_failed'):
    logger.info(f"Auth request failed: {e.code}")
    return jsonify({'error': e.message, 'code': e.code, 'title': t(title_key)}), 400


def header_links(user_session):
    if user_session.is_authenticated:
        return {
            'title': t('app_name'),
            'links': [{'label': t('nav_dashboard'), 'href': '/dashboard'}],
            'action': {'label': t('nav_logout'), 'href': '/api/auth/logout'},
        }
    return {
        'title': t('app_name'),
        'links': [],
        'action': {'label': t('nav_join'), 'href': '/'},
    }


# ------------------------- #
# Auth Routes
# ------------------------- #
@api.route('/auth/status')
def auth_status():
    user_session = get_user_session()
    preference = current_preference()
    data = user_session.to_dict()
    data['header'] = header_links(user_session)
    data['redirect'] = '/dashboard' if user_session.is_authenticated else None
    data['language'] = preference.language
    data['languageToggleLabel'] = preference.toggle_label
    return jsonify(data)


@api.route('/auth/signup', methods=['POST'])
def signup():
    data = json_object()
    email, password = text_field(data, 'email'), text_field(data, 'password')
    if not email or not password:
        return jsonify({'error': t('missing_credentials')}), 400

    user_session = get_user_session()
    try:
        user = accounts.sign_up(user_session.auth, user_session.store, email, password, collection())
    except AuthError as e:
        return auth_failure(e)
    remember_user(user)
    return jsonify({'message': t('signup_success'), 'user': user.to_dict()}), 201


@api.route('/auth/login', methods=['POST'])
def login():
    data = json_object()
    email, password = text_field(data, 'email'), text_field(data, 'password')
    if not email or not password:
        return jsonify({'error': t('missing_credentials')}), 400

    user_session = get_user_session()
    try:
        user = accounts.sign_in(user_session.auth, email, password)
    except AuthError as e:
        return auth_failure(e)
    remember_user(user)
    return jsonify({'message': t('login_success'), 'user': user.to_dict()})


@api.route('/auth/phone/send-code', methods=['POST'])
def phone_send_code():
    data = json_object()
    phone = text_field(data, 'phone')
    if not phone:
        return jsonify({'error': t('missing_phone')}), 400

    user_session = get_user_session()
    try:
        verification_id = accounts.request_phone_code(user_session.auth, phone,
                                                     text_field(data, 'recaptchaToken'))
    except AuthError as e:
        return auth_failure(e, 'otp_send_failed')
    return jsonify({'verificationId': verification_id, 'message': t('otp_sent', phone=phone)})


@api.route('/auth/phone/verify', methods=['POST'])
def phone_verify():
    data = json_object()
    verification_id, code = text_field(data, 'verificationId'), text_field(data, 'code')
    if not verification_id or not code:
        return jsonify({'error': t('missing_otp')}), 400

    user_session = get_user_session()
    try:
        user = accounts.confirm_phone_code(user_session.auth, user_session.store,
                                           verification_id, code, collection())
    except AuthError as e:
        return auth_failure(e)
    remember_user(user)
    return jsonify({'message': t('login_success'), 'user': user.to_dict()})


@api.route('/auth/password-reset', methods=['POST'])
def password_reset():
    data = json_object()
    email = text_field(data, 'email')
    if not email:
        return jsonify({'error': t('missing_credentials')}), 400

    user_session = get_user_session()
    try:
        accounts.send_password_reset(user_session.auth, email)
    except AuthError as e:
        return auth_failure(e)
    return jsonify({'message': t('password_reset_sent', email=email)})


@api.route('/auth/password-reset/confirm', methods=['POST'])
def password_reset_confirm():
    data = json_object()
    code, password = text_field(data, 'code'), text_field(data, 'password')
    if not code or not password:
        return jsonify({'error': t('missing_credentials')}), 400

    user_session = get_user_session()
    try:
        accounts.confirm_password_reset(user_session.auth, code, password)
    except AuthError as e:
        return auth_failure(e)
    return jsonify({'message': t('password_reset_done')})


@api.route('/auth/logout', methods=['POST'])
def logout():
    user_session = get_user_session()
    user_session.logout()
    forget_user()
    return jsonify({'message': t('logged_out')}), 200


# ------------------------- #
# Profile
# ------------------------- #
@api.route('/profile', methods=['GET'])
@login_required
def get_profile(user_session):
    data = user_session.to_dict()
    return jsonify({
        'profileStatus': data['profileStatus'],
        'profile': data['profile'],
        'form': form_defaults(user_session.profile),
    })


@api.route('/profile', methods=['PUT'])
@login_required
def update_profile(user_session):
    try:
        form = validate_profile(request.get_json(silent=True))
    except ProfileValidationError as e:
        return jsonify({'errors': {field: t(key) for field, key in e.errors.items()}}), 400

    try:
        payload = save_profile(user_session.store, user_session.user.uid, form, collection())
    except Exception as e:
        logger.error(f"Profile update failed: {e}")
        return jsonify({'error': t('profile_update_failed')}), 500
    return jsonify({'message': t('profile_updated'), 'profile': serialize_profile(payload)})


@api.route('/profile/geolocation', methods=['POST'])
@login_required
def profile_geolocation(user_session):
    try:
        geolocation = locate(json_object())
    except LocationError as e:
        logger.info(f"Geolocation unavailable: {e}")
        return jsonify({'error': t('geolocation_error')}), 400
    return jsonify({'geolocation': geolocation})


@api.route('/account', methods=['DELETE'])
@login_required
def delete_account(user_session):
    try:
        user_session.delete_account()
    except AuthError as e:
        logger.error(f"Account deletion failed: {e.code}")
        return jsonify({'error': e.message, 'title': t('account_delete_failed')}), 400
    except Exception as e:
        logger.error(f"Account deletion failed: {e}")
        return jsonify({'error': t('account_delete_failed')}), 500
    forget_user()
    return jsonify({'message': t('account_deleted')})


# ------------------------- #
# Dashboard
# ------------------------- #
def dashboard_state(dashboard):
    return {
        'id': dashboard.id,
        'donors': donors_state(dashboard.directory),
        'chat': dashboard.chat.to_dict(),
        'matcher': dashboard.matcher.to_dict(),
    }


def donors_state(directory):
    data = directory.snapshot()
    if data['empty']:
        data['message'] = t('no_donors_found')
    return data


@api.route('/dashboard', methods=['POST'])
@login_required
def open_dashboard(user_session):
    dashboard = user_session.open_dashboard(current_app.extensions['bloodlink.assistant'],
                                            t('chat_error'),
                                            current_app.config['DEFAULT_SEARCH_RADIUS_KM'])
    return jsonify(dashboard_state(dashboard)), 201


@api.route('/dashboard/<view_id>', methods=['DELETE'])
@login_required
def close_dashboard(user_session, view_id):
    if not user_session.close_dashboard(view_id):
        return jsonify({'error': t('view_not_found')}), 404
    return jsonify({'message': 'closed'})


@api.route('/dashboard/<view_id>/donors', methods=['GET'])
@dashboard_view
def list_donors(dashboard):
    return jsonify(donors_state(dashboard.directory))


@api.route('/dashboard/<view_id>/donors/filter', methods=['PUT'])
@dashboard_view
def stage_donor_filter(dashboard):
    data = json_object()
    blood_type, city = data.get('bloodType'), data.get('city')
    errors = {}
    if blood_type is not None and (not isinstance(blood_type, str)
                                   or blood_type and blood_type not in BLOOD_TYPES + (ALL_BLOOD_TYPES,)):
        errors['bloodType'] = t('error_blood_type_required')
    if city is not None and not isinstance(city, str):
        errors['city'] = t('error_invalid_value')
    if errors:
        return jsonify({'errors': errors}), 400
    staged = dashboard.directory.stage_filter(blood_type, city)
    return jsonify({'stagedFilter': staged})


@api.route('/dashboard/<view_id>/donors/search', methods=['POST'])
@dashboard_view
def search_donors(dashboard):
    dashboard.directory.search()
    return jsonify(donors_state(dashboard.directory))


@api.route('/dashboard/<view_id>/donors/<uid>/reveal', methods=['POST'])
@dashboard_view
def reveal_contact(dashboard, uid):
    field = json_object().get('field')
    try:
        value = dashboard.directory.reveal(uid, field)
    except UnknownDonor:
        return jsonify({'error': t('donor_not_found')}), 404
    except RevealNotAllowed:
        return jsonify({'error': t('reveal_not_allowed')}), 403
    except ValueError:
        return jsonify({'error': t('error_invalid_value')}), 400
    return jsonify({'uid': uid, 'field': field, 'value': value})


@api.route('/dashboard/<view_id>/chat', methods=['GET'])
@dashboard_view
def chat_log(dashboard):
    return jsonify(dashboard.chat.to_dict())


@api.route('/dashboard/<view_id>/chat', methods=['POST'])
@dashboard_view
def chat_send(dashboard):
    query = json_object().get('query')
    if query is not None and not isinstance(query, str):
        return jsonify({'errors': {'query': t('error_invalid_value')}}), 400
    dashboard.chat.send(query or '')
    return jsonify(dashboard.chat.to_dict())


@api.route('/dashboard/<view_id>/matches', methods=['POST'])
@dashboard_view
def find_matches(dashboard):
    try:
        result = dashboard.matcher.run(json_object())
    except ValidationError as e:
        logger.info(f"Rejected matcher input: {e.error_count()} errors")
        return jsonify({'error': t('matcher_invalid_input')}), 400
    except AssistantError:
        return jsonify({'error': t('matcher_error'), 'result': None}), 502
    if result is None:
        return jsonify(dashboard.matcher.to_dict()), 409
    return jsonify({'result': result.model_dump()})


# ------------------------- #
# Language
# ------------------------- #
@api.route('/language', methods=['GET'])
def get_language():
    preference = current_preference()
    return jsonify({'language': preference.language, 'toggleLabel': preference.toggle_label})


@api.route('/language', methods=['POST'])
def toggle_language():
    preference = current_preference()
    preference.toggle()
    return jsonify({
        'language': preference.language,
        'toggleLabel': preference.toggle_label,
        'message': t('language_changed'),
    })
