import os

# Must be set before app.py is imported: it reads FLASK_* at import time.
os.environ['FLASK_TESTING'] = 'true'
os.environ['FLASK_WTF_CSRF_ENABLED'] = 'false'
os.environ['FLASK_SQLALCHEMY_DATABASE_URI'] = 'sqlite://'
os.environ['FLASK_SECRET_KEY'] = 'test-secret-key-for-signing-mobile-tokens'

import pytest

from app import app as flask_app
from models import db, School, SchoolMembership, SchoolRole, SystemRole, User

PASSWORD = 'correct-horse-battery'
SCHOOL_EMAIL = 'office@greenfield.edu'


@pytest.fixture
def app():
    with flask_app.app_context():
        db.create_all()
    yield flask_app
    with flask_app.app_context():
        db.session.remove()
        db.drop_all()


@pytest.fixture
def app_ctx(app):
    """For calling the utils modules directly."""
    with app.app_context():
        yield app


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def make_school(app):
    def _make(name='Greenfield School', email=SCHOOL_EMAIL, code='GF01'):
        with app.app_context():
            school = School(name=name, email=email, code=code)
            db.session.add(school)
            db.session.commit()
            return school.id
    return _make


@pytest.fixture
def make_user(app):
    def _make(username, school_id=None, role=None, password=PASSWORD, email=None,
              system_role=None, first_name=None, last_name=None, is_active=True):
        with app.app_context():
            user = User(username=username, email=email, first_name=first_name, last_name=last_name,
                        name=username, is_active=is_active,
                        system_role=SystemRole(system_role) if system_role else None)
            user.set_password(password)
            db.session.add(user)
            db.session.flush()
            if school_id and role:
                db.session.add(SchoolMembership(user_id=user.id, school_id=school_id, role=SchoolRole(role)))
            db.session.commit()
            return user.id
    return _make


@pytest.fixture
def login(client):
    def _login(identifier, password=PASSWORD):
        response = client.post('/login', json={'identifier': identifier, 'password': password})
        assert response.status_code == 200, response.get_json()
        return response
    return _login


@pytest.fixture
def super_admin(make_user, login):
    user_id = make_user('root', email='root@example.com', system_role='SUPER_ADMIN')
    login('root@example.com')
    return user_id


@pytest.fixture
def school_admin(make_school, make_user, login):
    """Logs in as the ADMIN of a fresh school; returns (school_id, admin_id)."""
    school_id = make_school()
    admin_id = make_user('head', school_id=school_id, role='ADMIN')
    login('head@greenfield.edu')
    return school_id, admin_id
