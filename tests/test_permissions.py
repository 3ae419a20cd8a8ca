import pytest

from models import db, User
from utils.errors import ActionError
from utils.permissions import (
    CREATE_SCHOOL, MANAGE_ASSIGNMENTS, MANAGE_SCHOOL, get_all_permissions,
    get_user_managed_schools, has_school_permission, has_system_permission,
    is_username_unique_in_school, role_has_permission
)


def test_role_permission_table():
    assert role_has_permission('SUPER_ADMIN', CREATE_SCHOOL)
    assert role_has_permission('ADMIN', MANAGE_SCHOOL)
    assert not role_has_permission('ADMIN', CREATE_SCHOOL)
    assert role_has_permission('TEACHER', MANAGE_ASSIGNMENTS)
    assert not role_has_permission('STUDENT', MANAGE_ASSIGNMENTS)


def test_get_all_permissions_by_category():
    assert [p['name'] for p in get_all_permissions('system')] == [CREATE_SCHOOL]
    assert len(get_all_permissions()) == 3


def test_school_permission_checks(app_ctx, make_school, make_user):
    school_id = make_school()
    root = db.session.get(User, make_user('root', email='root@example.com', system_role='SUPER_ADMIN'))
    admin = db.session.get(User, make_user('head', school_id=school_id, role='ADMIN'))
    teacher = db.session.get(User, make_user('mrs.wong', school_id=school_id, role='TEACHER'))

    assert has_system_permission(root, CREATE_SCHOOL)
    assert not has_system_permission(admin, CREATE_SCHOOL)
    assert has_school_permission(root, school_id, MANAGE_SCHOOL)
    assert has_school_permission(admin, school_id, MANAGE_SCHOOL)
    assert not has_school_permission(teacher, school_id, MANAGE_SCHOOL)
    assert not has_school_permission(admin, school_id + 1, MANAGE_SCHOOL)

    with pytest.raises(ActionError) as exc:
        has_school_permission(admin, None, MANAGE_SCHOOL)
    assert exc.value.message == 'School context is required for this permission check.'

    assert [s.id for s in get_user_managed_schools(teacher, MANAGE_ASSIGNMENTS)] == [school_id]
    assert get_user_managed_schools(teacher, MANAGE_SCHOOL) == []


def test_username_unique_per_school(app_ctx, make_school, make_user):
    school_id = make_school()
    amy_id = make_user('amy', school_id=school_id, role='STUDENT')

    assert not is_username_unique_in_school('amy', school_id)
    assert is_username_unique_in_school('amy', school_id, exclude_user_id=amy_id)
    assert is_username_unique_in_school('amy', school_id + 1)


def test_school_routes_require_manage_permission(client, make_school, make_user, login):
    school_id = make_school()
    make_user('amy', school_id=school_id, role='STUDENT')
    login('amy@greenfield.edu')

    response = client.get(f'/api/schools/{school_id}/users')
    assert response.status_code == 403
    assert response.get_json() == {'success': False, 'error': 'Insufficient permissions'}
    assert client.post('/api/schools', json={'name': 'X', 'email': 'x@example.com'}).status_code == 403


def test_permissions_endpoint(client, school_admin):
    data = client.get('/api/permissions').get_json()['data']
    assert set(data['grouped']) == {'system', 'school'}
    assert data['roles']['ADMIN'].startswith('School Administrator')

    data = client.get('/api/permissions?category=school').get_json()['data']
    assert {p['name'] for p in data['permissions']} == {MANAGE_SCHOOL, MANAGE_ASSIGNMENTS}


def test_managed_schools_endpoint(client, school_admin):
    school_id, _ = school_admin
    data = client.get('/api/user/managed-schools').get_json()['data']
    assert [s['id'] for s in data] == [school_id]
