from app import mail
from models import db, User


def signup(client, **overrides):
    body = {'name': 'Dana Field', 'email': 'dana@example.com', 'password': 's3cret-pass'}
    body.update(overrides)
    return client.post('/api/auth/signup', json=body)


def login(client, email='dana@example.com', password='s3cret-pass'):
    return client.post('/api/auth/login', json={'email': email, 'password': password})


def test_signup_sends_verification_and_blocks_login_until_confirmed(app, client):
    with mail.record_messages() as outbox:
        response = signup(client)

    assert response.status_code == 200
    assert response.get_json()['email'] == 'dana@example.com'
    assert len(outbox) == 1
    assert outbox[0].recipients == ['dana@example.com']
    assert '/verify-email?token=' in outbox[0].body

    response = login(client)
    assert response.status_code == 400
    assert 'not confirmed' in response.get_json()['message']


def test_verify_email_then_login_returns_token_and_capabilities(app, client):
    signup(client, role='TECHNICIAN')
    with app.app_context():
        token = User.query.filter_by(email='dana@example.com').one().get_verification_token()

    response = client.post('/api/auth/verify-email', json={'token': token})
    assert response.status_code == 200

    response = login(client)
    assert response.status_code == 200
    data = response.get_json()
    assert data['user']['role'] == 'TECHNICIAN'
    assert data['session']['token_type'] == 'bearer'
    assert data['capabilities']['update_request_stage'] is True
    assert data['capabilities']['create_request'] is False

    headers = {'Authorization': f"Bearer {data['session']['access_token']}"}
    me = client.get('/api/auth/me', headers=headers)
    assert me.status_code == 200
    assert me.get_json()['user']['email'] == 'dana@example.com'


def test_verify_email_rejects_bad_token(client):
    assert client.post('/api/auth/verify-email', json={}).status_code == 400
    assert client.post('/api/auth/verify-email', json={'token': 'garbage'}).status_code == 400


def test_unknown_role_defaults_to_employee(app, client):
    signup(client, role='SUPERUSER')
    with app.app_context():
        assert User.query.filter_by(email='dana@example.com').one().role == 'EMPLOYEE'


def test_signup_roles_can_be_restricted(app, client, monkeypatch):
    monkeypatch.setitem(app.config, 'SIGNUP_ROLES', ['EMPLOYEE', 'TECHNICIAN'])
    signup(client, role='ADMIN')
    with app.app_context():
        assert User.query.filter_by(email='dana@example.com').one().role == 'EMPLOYEE'


def test_signup_requires_fields(client):
    response = signup(client, password='')
    assert response.status_code == 400


def test_duplicate_signup_is_rejected(client):
    signup(client)
    response = signup(client)
    assert response.status_code == 400
    assert response.get_json()['message'] == 'User already exists. Please try logging in instead.'


def test_duplicate_signup_activates_unconfirmed_account_when_auto_confirming(app, client, monkeypatch):
    signup(client)
    monkeypatch.setitem(app.config, 'AUTO_CONFIRM_EMAILS', True)

    response = signup(client)
    assert response.status_code == 400
    assert 'has been activated' in response.get_json()['message']
    with app.app_context():
        assert User.query.filter_by(email='dana@example.com').one().is_confirmed


def test_auto_confirm_lets_unconfirmed_user_log_in(app, client, monkeypatch):
    signup(client)
    monkeypatch.setitem(app.config, 'AUTO_CONFIRM_EMAILS', True)

    response = login(client)
    assert response.status_code == 200
    with app.app_context():
        user = User.query.filter_by(email='dana@example.com').one()
        assert user.is_confirmed
        assert user.last_login is not None


def test_wrong_password_is_rejected(client, employee):
    response = login(client, email=employee.email, password='nope')
    assert response.status_code == 400
    assert response.get_json()['message'] == 'Invalid login credentials'


def test_disabled_user_cannot_log_in_or_use_token(app, client, employee):
    with app.app_context():
        db.session.get(User, employee.id).is_active = False
        db.session.commit()

    assert login(client, email=employee.email, password=employee.password).status_code == 400
    assert client.get('/api/auth/me', headers=employee.headers).status_code == 401


def test_resend_verification_does_not_reveal_accounts(client):
    signup(client)
    with mail.record_messages() as outbox:
        known = client.post('/api/auth/resend-verification', json={'email': 'dana@example.com'})
        unknown = client.post('/api/auth/resend-verification', json={'email': 'ghost@example.com'})

    assert known.get_json() == unknown.get_json()
    assert len(outbox) == 1
    assert client.post('/api/auth/resend-verification', json={}).status_code == 400
