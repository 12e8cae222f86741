import os
import itertools
from types import SimpleNamespace

# Configure the app before it is imported; app.py reads the environment at import time
os.environ['DATABASE_URI'] = 'sqlite://'
os.environ['SECRET_KEY'] = 'test-secret-key'
os.environ['MAIL_SUPPRESS_SEND'] = 'true'
os.environ['BCRYPT_LOG_ROUNDS'] = '4'
os.environ['AUTO_CONFIRM_EMAILS'] = 'false'

import pytest

from app import app as flask_app
from models import db, User, MaintenanceRequest

_user_counter = itertools.count(1)


@pytest.fixture
def app():
    flask_app.config.update(TESTING=True)
    with flask_app.app_context():
        db.create_all()
    yield flask_app
    with flask_app.app_context():
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def make_user(app):
    """Creates a confirmed user and returns its id, role and bearer headers."""
    def _make_user(role, name=None, password='password123', confirmed=True):
        n = next(_user_counter)
        with app.app_context():
            user = User(
                name=name or f'{role.title()} {n}',
                email=f'{role.lower()}{n}@example.com',
                role=role
            )
            user.set_password(password)
            if confirmed:
                user.confirm_email()
            db.session.add(user)
            db.session.commit()
            return SimpleNamespace(
                id=user.id,
                name=user.name,
                email=user.email,
                role=role,
                password=password,
                headers={'Authorization': f'Bearer {user.get_auth_token()}'},
            )
    return _make_user


@pytest.fixture
def make_request(app):
    """Inserts a maintenance request directly and returns its id."""
    def _make_request(created_by, technician=None, stage='NEW_REQUEST', subject='Pump leaking', **fields):
        with app.app_context():
            maintenance_request = MaintenanceRequest(
                subject=subject,
                created_by_user_id=created_by.id,
                technician_id=technician.id if technician else None,
                stage=stage,
                company='My Company',
                **fields
            )
            db.session.add(maintenance_request)
            db.session.commit()
            return maintenance_request.id
    return _make_request


@pytest.fixture
def admin(make_user):
    return make_user('ADMIN')


@pytest.fixture
def manager(make_user):
    return make_user('MANAGER')


@pytest.fixture
def technician(make_user):
    return make_user('TECHNICIAN')


@pytest.fixture
def employee(make_user):
    return make_user('EMPLOYEE')
