import re

import pytest

import identity as identity_module
from conftest import donor, model_reply


def sign_up(client, email='ann@example.com', password='secret123'):
    return client.post('/api/auth/signup', json={'email': email, 'password': password})


def use_english(client):
    client.post('/api/language')


def forget_live_sessions(app):
    registry = app.extensions['bloodlink.sessions']
    for sid in list(registry._sessions):
        registry.discard(sid)


PROFILE = {
    'name': 'Ann Donor',
    'email': 'ann@example.com',
    'phone': '+15550000000',
    'gender': 'female',
    'bloodType': 'O-',
    'lastDonationDate': '2024-03-05',
    'city': 'Boston',
    'mobileVisibility': True,
}


@pytest.fixture
def signed_in(client):
    use_english(client)
    response = sign_up(client)
    assert response.status_code == 201
    return response.get_json()['user']


@pytest.fixture
def view_id(client, signed_in):
    response = client.post('/api/dashboard')
    assert response.status_code == 201
    return response.get_json()['id']


# ------------------------- #
# Basics
# ------------------------- #
def test_health(client):
    assert client.get('/api/health').get_json() == {'status': 'healthy'}


def test_unknown_route_is_json(client):
    response = client.get('/api/nothing-here')
    assert response.status_code == 404
    assert response.get_json() == {'error': 'Not found'}


def test_anonymous_status(client):
    data = client.get('/api/auth/status').get_json()
    assert data['status'] == 'anonymous'
    assert data['user'] is None
    assert data['redirect'] is None
    assert data['header']['action']['href'] == '/'
    assert data['language'] == 'bn'
    assert data['languageToggleLabel'] == 'Eng'


# ------------------------- #
# Auth
# ------------------------- #
def test_sign_up_creates_profile_stub(client, signed_in):
    data = client.get('/api/auth/status').get_json()
    assert data['status'] == 'authenticated'
    assert data['profileStatus'] == 'present'
    assert data['profile']['name'] == 'ann'
    assert data['redirect'] == '/dashboard'
    assert data['header']['links'][0]['href'] == '/dashboard'
    assert data['header']['action']['label'] == 'Logout'


def test_sign_up_requires_credentials(client):
    assert client.post('/api/auth/signup', json={'email': 'ann@example.com'}).status_code == 400


def test_duplicate_sign_up_reports_provider_message(client, signed_in):
    response = sign_up(client)
    assert response.status_code == 400
    assert response.get_json()['code'] == 'EMAIL_EXISTS'
    assert response.get_json()['title'] == 'Authentication Failed'


def test_login(client, signed_in):
    client.post('/api/auth/logout')
    response = client.post('/api/auth/login', json={'email': 'ann@example.com', 'password': 'secret123'})
    assert response.status_code == 200
    assert response.get_json()['message'] == 'Login successful!'

    response = client.post('/api/auth/login', json={'email': 'ann@example.com', 'password': 'nope123'})
    assert response.status_code == 400
    assert response.get_json()['error'] == 'Email or password is incorrect.'


def test_session_is_restored_from_stored_token(app, client, signed_in):
    forget_live_sessions(app)
    data = client.get('/api/auth/status').get_json()
    assert data['status'] == 'authenticated'
    assert data['user']['uid'] == signed_in['uid']


def test_logout(client, signed_in):
    response = client.post('/api/auth/logout')
    assert response.get_json()['message'] == 'You have been logged out.'
    assert client.get('/api/auth/status').get_json()['status'] == 'anonymous'
    assert client.get('/api/profile').status_code == 401


def test_phone_sign_in(client, store, monkeypatch):
    texts = []
    monkeypatch.setattr(identity_module, 'send_sms', lambda phone, body: texts.append(body))
    use_english(client)

    response = client.post('/api/auth/phone/send-code',
                           json={'phone': '+15550001234', 'recaptchaToken': 'token'})
    assert response.get_json()['message'] == 'An OTP has been sent to +15550001234'
    verification_id = response.get_json()['verificationId']

    code = re.search(r'\d{6}', texts[-1]).group(0)
    response = client.post('/api/auth/phone/verify', json={'verificationId': verification_id, 'code': code})
    assert response.status_code == 200
    uid = response.get_json()['user']['uid']

    profile = store.get('users', uid)
    assert profile['phone'] == '+15550001234'
    assert profile['name'] == f"User {uid[:5]}"


def test_phone_send_code_failure(client):
    use_english(client)
    response = client.post('/api/auth/phone/send-code', json={'phone': '+15550001234'})
    assert response.status_code == 400
    assert response.get_json()['title'] == 'Failed to send OTP'
    assert client.post('/api/auth/phone/verify', json={}).status_code == 400


def test_password_reset_request(client):
    response = client.post('/api/auth/password-reset', json={'email': 'nobody@example.com'})
    assert response.status_code == 200
    assert 'nobody@example.com' in response.get_json()['message']


def test_password_reset_confirm_rejects_bad_code(client):
    response = client.post('/api/auth/password-reset/confirm', json={'code': 'bogus', 'password': 'secret123'})
    assert response.status_code == 400
    assert response.get_json()['code'] == 'INVALID_OOB_CODE'


# ------------------------- #
# Profile
# ------------------------- #
def test_profile_requires_login(client):
    assert client.put('/api/profile', json=PROFILE).status_code == 401


def test_profile_validation_errors_are_localized(client, signed_in):
    response = client.put('/api/profile', json=dict(PROFILE, name='A', city=''))
    assert response.status_code == 400
    assert response.get_json()['errors'] == {
        'name': 'Name must be at least 2 characters.',
        'city': 'City is required.',
    }


def test_profile_update_and_read_back(client, store, signed_in):
    response = client.put('/api/profile', json=dict(PROFILE, email='other@example.com'))
    assert response.status_code == 200
    assert response.get_json()['message'] == 'Your information has been saved successfully.'

    data = client.get('/api/profile').get_json()
    assert data['profileStatus'] == 'present'
    assert data['form']['bloodType'] == 'O-'
    assert data['form']['lastDonationDate'] == '2024-03-05'
    # the stored email is kept
    assert data['form']['email'] == 'ann@example.com'


def test_geolocation(client, signed_in):
    response = client.post('/api/profile/geolocation', json={'latitude': 23.81031, 'longitude': 90.41249})
    assert response.get_json() == {'geolocation': '23.8103, 90.4125'}

    response = client.post('/api/profile/geolocation', json={'error': 'denied'})
    assert response.status_code == 400
    assert response.get_json()['error'] == 'Could not retrieve your location.'


def test_delete_account(client, store, signed_in):
    response = client.delete('/api/account')
    assert response.status_code == 200
    assert store.get('users', signed_in['uid']) is None
    assert client.get('/api/auth/status').get_json()['status'] == 'anonymous'

    response = client.post('/api/auth/login', json={'email': 'ann@example.com', 'password': 'secret123'})
    assert response.status_code == 400


# ------------------------- #
# Dashboard
# ------------------------- #
def test_dashboard_requires_login(client):
    assert client.post('/api/dashboard').status_code == 401


def test_dashboard_lists_complete_donors_with_masked_contacts(client, store, signed_in):
    store.set('users', 'd1', donor('Dee', 'O-', 'Boston', phone='+15550009999', mobileVisibility=True))
    store.set('users', 'd2', {'name': 'No City', 'bloodType': 'A+'})
    view = client.post('/api/dashboard').get_json()

    # the signed-up user has no blood type yet, so only d1 is listed
    assert [row['uid'] for row in view['donors']['donors']] == ['d1']
    assert view['donors']['donors'][0]['phone'] is None
    assert view['chat'] == {'messages': [], 'busy': False}
    assert view['matcher'] == {'busy': False, 'result': None, 'failed': False}


def test_filter_and_search(client, store, signed_in, view_id):
    store.set('users', 'd1', donor('Dee', 'O-', 'Boston'))
    store.set('users', 'd2', donor('Eli', 'O-', 'Denver'))
    store.set('users', 'd3', donor('Fay', 'A+', 'Boston'))

    response = client.put(f'/api/dashboard/{view_id}/donors/filter', json={'bloodType': 'O-', 'city': 'bos'})
    assert response.get_json()['stagedFilter'] == {'bloodType': 'O-', 'city': 'bos'}
    assert len(client.get(f'/api/dashboard/{view_id}/donors').get_json()['donors']) == 3

    data = client.post(f'/api/dashboard/{view_id}/donors/search').get_json()
    assert [row['uid'] for row in data['donors']] == ['d1']

    client.put(f'/api/dashboard/{view_id}/donors/filter', json={'bloodType': 'AB-', 'city': ''})
    data = client.post(f'/api/dashboard/{view_id}/donors/search').get_json()
    assert data['empty'] is True
    assert data['message'] == 'No donors found matching your criteria.'


def test_filter_rejects_unknown_blood_type(client, signed_in, view_id):
    response = client.put(f'/api/dashboard/{view_id}/donors/filter', json={'bloodType': 'Z+'})
    assert response.status_code == 400


def test_filter_rejects_non_string_fields(client, store, signed_in, view_id):
    store.set('users', 'd1', donor('Dee', 'O-', 'Boston'))
    url = f'/api/dashboard/{view_id}/donors/filter'

    response = client.put(url, json={'city': 5})
    assert response.status_code == 400
    assert response.get_json()['errors'] == {'city': 'Invalid value.'}

    response = client.put(url, json={'bloodType': 7, 'city': 'bos'})
    assert response.status_code == 400
    assert response.get_json()['errors'] == {'bloodType': 'Please select a blood type.'}

    # nothing bad was staged, so searching still works
    response = client.post(f'/api/dashboard/{view_id}/donors/search')
    assert response.status_code == 200
    assert [row['uid'] for row in response.get_json()['donors']] == ['d1']


def test_filter_ignores_non_object_body(client, signed_in, view_id):
    response = client.put(f'/api/dashboard/{view_id}/donors/filter', json=['O-', 'bos'])
    assert response.get_json()['stagedFilter'] == {'bloodType': 'all', 'city': ''}


def test_reveal_is_limited_to_displayed_donors(client, store, signed_in, view_id):
    store.set('users', 'd1', donor('Dee', 'O-', 'Boston', phone='+15550009999', mobileVisibility=True))
    store.set('users', 'd2', donor('Eli', 'A+', 'Denver', phone='+15550008888', mobileVisibility=True))
    client.put(f'/api/dashboard/{view_id}/donors/filter', json={'bloodType': 'O-'})
    client.post(f'/api/dashboard/{view_id}/donors/search')

    response = client.post(f'/api/dashboard/{view_id}/donors/d2/reveal', json={'field': 'phone'})
    assert response.status_code == 404
    assert response.get_json()['error'] == 'Donor not found.'


def test_reveal(client, store, signed_in, view_id):
    store.set('users', 'd1', donor('Dee', 'O-', 'Boston', phone='+15550009999', mobileVisibility=True))
    store.set('users', 'd2', donor('Eli', 'O-', 'Denver', phone='+15550008888', mobileVisibility=False))

    url = f'/api/dashboard/{view_id}/donors/d1/reveal'
    assert client.post(url, json={'field': 'phone'}).get_json()['value'] == '+15550009999'
    assert client.post(url, json={'field': 'phone'}).status_code == 200
    rows = client.get(f'/api/dashboard/{view_id}/donors').get_json()['donors']
    assert next(r for r in rows if r['uid'] == 'd1')['phone'] == '+15550009999'

    response = client.post(f'/api/dashboard/{view_id}/donors/d2/reveal', json={'field': 'phone'})
    assert response.status_code == 403
    assert client.post(f'/api/dashboard/{view_id}/donors/zz/reveal', json={'field': 'phone'}).status_code == 404
    assert client.post(url, json={'field': 'address'}).status_code == 400


def test_reopened_view_starts_masked(client, store, signed_in, view_id):
    store.set('users', 'd1', donor('Dee', 'O-', 'Boston', phone='+15550009999', mobileVisibility=True))
    client.post(f'/api/dashboard/{view_id}/donors/d1/reveal', json={'field': 'phone'})

    assert client.delete(f'/api/dashboard/{view_id}').status_code == 200
    assert client.get(f'/api/dashboard/{view_id}/donors').status_code == 404

    fresh = client.post('/api/dashboard').get_json()
    assert fresh['donors']['donors'][0]['phone'] is None


def test_chat(client, ai_client, signed_in, view_id):
    data = client.post(f'/api/dashboard/{view_id}/chat', json={'query': 'How often can I donate?'}).get_json()
    assert [m['role'] for m in data['messages']] == ['user', 'bot']

    ai_client.models.generate_content.side_effect = RuntimeError('offline')
    data = client.post(f'/api/dashboard/{view_id}/chat', json={'query': 'And now?'}).get_json()
    assert data['messages'][-1] == {'role': 'bot', 'text': "Sorry, I couldn't process your request. Please try again."}

    assert len(client.get(f'/api/dashboard/{view_id}/chat').get_json()['messages']) == 4


def test_matches(client, ai_client, signed_in, view_id):
    ai_client.models.generate_content.return_value = model_reply({
        'suggestedDonors': [{'donorName': 'Dee', 'donorBloodType': 'O-', 'distanceKm': 4,
                             'contactInformation': '+15550009999', 'suitabilityScore': 88}],
        'summary': 'One donor nearby.',
    })
    url = f'/api/dashboard/{view_id}/matches'
    criteria = {'patientBloodType': 'O-', 'patientCity': 'Boston', 'patientNeeds': ''}

    response = client.post(url, json=criteria)
    assert response.status_code == 200
    assert response.get_json()['result']['suggestedDonors'][0]['donorName'] == 'Dee'

    ai_client.models.generate_content.side_effect = RuntimeError('offline')
    response = client.post(url, json=criteria)
    assert response.status_code == 502
    assert response.get_json() == {'error': 'Failed to find donor matches. Please try again.', 'result': None}

    assert client.post(url, json={'patientCity': 'Boston'}).status_code == 400


def test_chat_rejects_non_string_query(client, ai_client, signed_in, view_id):
    response = client.post(f'/api/dashboard/{view_id}/chat', json={'query': 123})
    assert response.status_code == 400
    assert response.get_json()['errors'] == {'query': 'Invalid value.'}
    assert client.get(f'/api/dashboard/{view_id}/chat').get_json()['messages'] == []
    ai_client.models.generate_content.assert_not_called()


def test_matches_rejects_non_object_body(client, ai_client, signed_in, view_id):
    response = client.post(f'/api/dashboard/{view_id}/matches', json=[1, 2])
    assert response.status_code == 400
    assert response.get_json() == {'error': 'Please check the patient details and try again.'}
    ai_client.models.generate_content.assert_not_called()


def test_auth_rejects_wrong_typed_fields(client):
    assert client.post('/api/auth/login', json=['ann@example.com', 'secret123']).status_code == 400
    assert client.post('/api/auth/signup', json={'email': 5, 'password': 'secret123'}).status_code == 400
    assert client.post('/api/auth/phone/send-code', json={'phone': 15550001234}).status_code == 400
    assert client.post('/api/auth/password-reset', json={'email': ['a@example.com']}).status_code == 400


def test_geolocation_rejects_non_object_body(client, signed_in):
    assert client.post('/api/profile/geolocation', json=[23.8, 90.4]).status_code == 400
