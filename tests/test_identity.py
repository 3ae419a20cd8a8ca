import jwt
import pytest

from models import db, SchoolMembership
from utils.errors import ActionError
from utils.identity import (
    ACCOUNT_INACTIVE, INVALID_CREDENTIALS, MISSING_CREDENTIALS, authenticate,
    compute_display_name, construct_login_identifier, decode_mobile_token,
    extract_school_domain, is_valid_school_email, issue_mobile_token, parse_login_identifier
)


def test_compute_display_name_puts_family_name_first():
    assert compute_display_name('Tai Man', 'Chan') == 'Chan Tai Man'
    assert compute_display_name('Mary', None) == 'Mary'
    assert compute_display_name(' ', '') is None


@pytest.mark.parametrize('identifier, expected', [
    ('john@school.edu', {'username': 'john', 'school_domain': 'school.edu'}),
    ('john.doe@mail.school.edu', {'username': 'john.doe', 'school_domain': 'mail.school.edu'}),
    ('john', None),
    ('@school.edu', None),
    ('john@', None),
    ('john@localhost', None),
    ('', None),
])
def test_parse_login_identifier(identifier, expected):
    assert parse_login_identifier(identifier) == expected


def test_school_email_helpers():
    assert extract_school_domain('office@greenfield.edu') == 'greenfield.edu'
    assert construct_login_identifier('amy', 'office@greenfield.edu') == 'amy@greenfield.edu'
    assert is_valid_school_email('office@greenfield.edu')
    assert not is_valid_school_email('office@greenfield')
    assert not is_valid_school_email('')


def test_authenticate_by_school_identifier(app_ctx, make_school, make_user):
    school_id = make_school()
    user_id = make_user('amy', school_id=school_id, role='STUDENT')

    user = authenticate('amy@greenfield.edu', 'correct-horse-battery')
    assert user.id == user_id


def test_same_username_in_two_schools_resolves_by_domain(app_ctx, make_school, make_user):
    first = make_school()
    second = make_school(name='Hillside', email='office@hillside.edu', code='HS01')
    make_user('amy', school_id=first, role='STUDENT')
    other_id = make_user('amy', school_id=second, role='TEACHER')

    assert authenticate('amy@hillside.edu', 'correct-horse-battery').id == other_id


def test_authenticate_by_email_or_username(app_ctx, make_user):
    user_id = make_user('root', email='root@example.com', system_role='SUPER_ADMIN')
    assert authenticate('root@example.com', 'correct-horse-battery').id == user_id
    assert authenticate('root', 'correct-horse-battery').id == user_id


def test_authenticate_failures(app_ctx, make_school, make_user):
    school_id = make_school()
    make_user('amy', school_id=school_id, role='STUDENT')
    make_user('gone', school_id=school_id, role='STUDENT', is_active=False)

    with pytest.raises(ActionError) as exc:
        authenticate('', 'x')
    assert exc.value.payload['code'] == MISSING_CREDENTIALS

    with pytest.raises(ActionError) as exc:
        authenticate('amy@greenfield.edu', 'wrong-password')
    assert exc.value.status_code == 401
    assert exc.value.payload['code'] == INVALID_CREDENTIALS

    with pytest.raises(ActionError) as exc:
        authenticate('gone@greenfield.edu', 'correct-horse-battery')
    assert exc.value.message == 'Account is inactive'
    assert exc.value.payload['code'] == ACCOUNT_INACTIVE


def test_authenticate_with_school_code(app_ctx, make_school, make_user):
    school_id = make_school()
    make_user('amy', school_id=school_id, role='STUDENT')

    assert authenticate('amy@greenfield.edu', 'correct-horse-battery', school_code='GF01')
    with pytest.raises(ActionError):
        authenticate('amy@greenfield.edu', 'correct-horse-battery', school_code='NOPE')


def test_inactive_membership_blocks_school_login(app_ctx, make_school, make_user):
    school_id = make_school()
    user_id = make_user('amy', school_id=school_id, role='STUDENT')
    SchoolMembership.query.filter_by(user_id=user_id).update({'is_active': False})
    db.session.commit()

    with pytest.raises(ActionError):
        authenticate('amy@greenfield.edu', 'correct-horse-battery')


def test_mobile_token_round_trip(app_ctx, make_school, make_user):
    school_id = make_school()
    user_id = make_user('amy', school_id=school_id, role='TEACHER')
    user = authenticate('amy@greenfield.edu', 'correct-horse-battery')

    payload = decode_mobile_token(issue_mobile_token(user))
    assert payload['user_id'] == user_id
    assert payload['username'] == 'amy'
    assert payload['schools'] == [{
        'id': school_id, 'name': 'Greenfield School', 'code': 'GF01',
        'email': 'office@greenfield.edu', 'role': 'TEACHER',
    }]
    assert payload['exp'] - payload['iat'] == 30 * 24 * 3600


def test_expired_token_only_decodes_without_expiry_check(app_ctx, make_user):
    make_user('root', email='root@example.com')
    user = authenticate('root', 'correct-horse-battery')
    app_ctx.config['MOBILE_TOKEN_DAYS'] = -1
    try:
        token = issue_mobile_token(user)
    finally:
        app_ctx.config['MOBILE_TOKEN_DAYS'] = 30

    with pytest.raises(jwt.ExpiredSignatureError):
        decode_mobile_token(token)
    assert decode_mobile_token(token, verify_exp=False)['user_id'] == user.id
