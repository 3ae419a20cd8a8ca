import io

from models import db, SchoolMembership, StudentClass, TeacherClass, User
from utils.school_classes import create_school_class


def test_create_school_user_with_generated_password(client, school_admin):
    school_id, _ = school_admin
    response = client.post(f'/api/schools/{school_id}/users', json={
        'username': 'amy', 'first_name': 'Amy', 'last_name': 'Lee', 'role': 'STUDENT',
        'generate_password': True, 'student_id': 'S001',
    })
    assert response.status_code == 201
    data = response.get_json()['data']
    assert data['login_identifier'] == 'amy@greenfield.edu'
    assert data['name'] == 'Lee Amy'
    assert data['role'] == 'STUDENT'
    assert len(data['generated_password']) >= 12

    login = client.application.test_client().post('/login', json={
        'identifier': 'amy@greenfield.edu', 'password': data['generated_password'],
    })
    assert login.status_code == 200


def test_create_school_user_validation(client, school_admin):
    school_id, _ = school_admin
    response = client.post(f'/api/schools/{school_id}/users', json={
        'username': 'amy', 'first_name': 'Amy', 'last_name': 'Lee', 'role': 'STUDENT', 'password': 'short',
    })
    assert response.status_code == 400
    assert 'password' in response.get_json()['errors']

    response = client.post(f'/api/schools/{school_id}/users', json={
        'username': 'head', 'first_name': 'Dup', 'last_name': 'Head', 'role': 'TEACHER',
        'password': 'long-enough-password',
    })
    assert response.status_code == 400
    assert response.get_json()['error'] == 'Username already exists in this school'


def test_list_and_filter_school_users(client, school_admin, make_user):
    school_id, _ = school_admin
    make_user('amy', school_id=school_id, role='STUDENT', first_name='Amy')
    make_user('mrs.wong', school_id=school_id, role='TEACHER', first_name='Mary')

    data = client.get(f'/api/schools/{school_id}/users').get_json()['data']
    assert data['pagination']['total'] == 3

    data = client.get(f'/api/schools/{school_id}/users?role=TEACHER').get_json()['data']
    assert [u['username'] for u in data['users']] == ['mrs.wong']

    data = client.get(f'/api/schools/{school_id}/users?search=am&include_classes=true').get_json()['data']
    assert [u['username'] for u in data['users']] == ['amy']
    assert data['users'][0]['student_classes'] == []


def test_update_school_user_applies_only_sent_fields(app, client, school_admin, make_user):
    school_id, _ = school_admin
    amy_id = make_user('amy', school_id=school_id, role='STUDENT', first_name='Amy', last_name='Lee')

    response = client.patch(f'/api/schools/{school_id}/users/{amy_id}', json={'first_name': 'Amelia', 'role': 'TEACHER'})
    data = response.get_json()['data']
    assert response.status_code == 200
    assert data['name'] == 'Lee Amelia'
    assert data['last_name'] == 'Lee'
    assert data['role'] == 'TEACHER'

    response = client.patch(f'/api/schools/{school_id}/users/{amy_id}', json={'is_active': False})
    assert response.get_json()['data']['is_active'] is False

    response = client.patch(f'/api/schools/{school_id}/users/999', json={'first_name': 'X'})
    assert response.status_code == 404
    assert response.get_json()['error'] == 'User not found or does not belong to this school'


def test_reset_password(app, client, school_admin, make_user):
    school_id, _ = school_admin
    amy_id = make_user('amy', school_id=school_id, role='STUDENT')

    response = client.post(f'/api/schools/{school_id}/users/{amy_id}/reset-password', json={})
    generated = response.get_json()['data']['new_password']

    response = client.post(f'/api/schools/{school_id}/users/{amy_id}/reset-password',
                           json={'new_password': 'chosen-by-admin-1'})
    assert response.status_code == 200
    assert 'data' not in response.get_json()
    with app.app_context():
        user = db.session.get(User, amy_id)
        assert user.check_password('chosen-by-admin-1')
        assert not user.check_password(generated)


def test_bulk_operations(app, client, school_admin, make_user):
    school_id, _ = school_admin
    amy_id = make_user('amy', school_id=school_id, role='STUDENT')
    bob_id = make_user('bob', school_id=school_id, role='STUDENT')
    with app.app_context():
        class_id = create_school_class(school_id, name='1A').id
    url = f'/api/schools/{school_id}/users/bulk'

    response = client.post(url, json={'operation': 'class-assign', 'user_ids': [amy_id, bob_id], 'value': class_id})
    assert response.get_json()['message'] == 'Assigned 2 users to class 1A'
    # assigning again must not duplicate the links
    client.post(url, json={'operation': 'class-assign', 'user_ids': [amy_id], 'value': class_id})
    with app.app_context():
        assert StudentClass.query.filter_by(class_id=class_id).count() == 2

    response = client.post(url, json={'operation': 'password-reset', 'user_ids': [amy_id]})
    resets = response.get_json()['data']['password_resets']
    assert resets[0]['login_identifier'] == 'amy@greenfield.edu'

    response = client.post(url, json={'operation': 'status', 'user_ids': [bob_id], 'value': 'inactive'})
    assert response.get_json()['message'] == 'Deactivated 1 users'
    response = client.post(url, json={'operation': 'status', 'user_ids': [bob_id], 'value': True})
    assert response.get_json()['message'] == 'Activated 1 users'

    response = client.post(url, json={'operation': 'role', 'user_ids': [amy_id, 999], 'value': 'TEACHER'})
    assert response.status_code == 400
    assert response.get_json()['error'] == 'Some users are not members of this school: 999'

    response = client.post(url, json={'operation': 'explode', 'user_ids': [amy_id]})
    assert response.status_code == 400


def test_bulk_class_assign_skips_admins(app, client, school_admin, make_user):
    school_id, admin_id = school_admin
    amy_id = make_user('amy', school_id=school_id, role='STUDENT')
    teacher_id = make_user('mrs.wong', school_id=school_id, role='TEACHER')
    with app.app_context():
        class_id = create_school_class(school_id, name='1A').id
    url = f'/api/schools/{school_id}/users/bulk'

    response = client.post(url, json={'operation': 'class-assign', 'user_ids': [admin_id, amy_id, teacher_id],
                                      'value': class_id})
    assert response.status_code == 200
    assert response.get_json()['message'] == 'Assigned 2 users to class 1A'
    with app.app_context():
        assert StudentClass.query.filter_by(user_id=admin_id).count() == 0
        assert TeacherClass.query.filter_by(user_id=admin_id).count() == 0
        assert TeacherClass.query.filter_by(user_id=teacher_id, class_id=class_id).count() == 1

    response = client.post(url, json={'operation': 'class-assign', 'user_ids': [amy_id], 'value': class_id})
    assert response.get_json()['message'] == 'Assigned 0 users to class 1A'


def test_bulk_class_operations_reject_bad_class_id(client, school_admin, make_user):
    school_id, _ = school_admin
    amy_id = make_user('amy', school_id=school_id, role='STUDENT')
    url = f'/api/schools/{school_id}/users/bulk'

    for operation in ('class-assign', 'class-remove'):
        response = client.post(url, json={'operation': operation, 'user_ids': [amy_id], 'value': 'abc'})
        assert response.status_code == 404
        assert response.get_json()['error'] == 'Class not found or does not belong to this school'


def test_create_school_user_accepts_numeric_fields(app, client, school_admin):
    school_id, _ = school_admin
    response = client.post(f'/api/schools/{school_id}/users', json={
        'username': 'amy', 'first_name': 'Amy', 'last_name': 'Lee', 'role': 'STUDENT',
        'generate_password': True, 'student_id': 12345, 'grade_level': 7,
    })
    assert response.status_code == 201
    with app.app_context():
        user = User.query.filter_by(username='amy').one()
        assert user.student_id == '12345'
        assert user.grade_level == '7'

    response = client.post(f'/api/schools/{school_id}/users', json={
        'username': 'bob', 'first_name': 'Bob', 'last_name': 'Ho', 'role': 'STUDENT',
        'generate_password': True, 'student_id': 10 ** 60,
    })
    assert response.status_code == 400
    assert 'student_id' in response.get_json()['errors']


def test_import_template_download(client, school_admin):
    school_id, _ = school_admin
    response = client.get(f'/api/schools/{school_id}/users/import/template?format=csv')
    assert response.status_code == 200
    assert response.headers['Content-Disposition'] == 'attachment;filename=bulk-users-template.csv'
    assert response.data.startswith(b'"username","firstName"')


def test_import_preview_and_upload(app, client, school_admin):
    school_id, _ = school_admin
    csv_text = b'Login,First Name,Surname,Role,Class\namy,Amy,Lee,student,1A\nbob,Bob,Ho,TEACHER,1A\n'

    response = client.post(f'/api/schools/{school_id}/users/import/preview', data={
        'file': (io.BytesIO(csv_text), 'users.csv'),
    }, content_type='multipart/form-data')
    preview = response.get_json()['data']
    assert preview['columns']['Login'] == 'username'
    assert len(preview['rows']) == 2

    response = client.post(f'/api/schools/{school_id}/users/import', data={
        'file': (io.BytesIO(csv_text), 'users.csv'),
    }, content_type='multipart/form-data')
    body = response.get_json()
    assert response.status_code == 200
    assert body['message'] == 'Import complete! Created: 2, Failed: 0.'
    assert body['data']['summary']['classes_created'] == 1

    response = client.post(f'/api/schools/{school_id}/users/import/credentials', json={
        'created': body['data']['created'], 'format': 'csv',
    })
    assert response.status_code == 200
    assert 'created-users-GF01-' in response.headers['Content-Disposition']
    assert b'"amy","amy@greenfield.edu"' in response.data


def test_import_upload_rejections(client, school_admin):
    school_id, _ = school_admin
    url = f'/api/schools/{school_id}/users/import'

    response = client.post(url, data={'file': (io.BytesIO(b'x'), 'users.txt')}, content_type='multipart/form-data')
    assert response.status_code == 400
    assert response.get_json()['errors']['file'] == ['Please select a CSV or Excel file']

    bad = b'username,firstName,lastName,role\namy,Amy,Lee,OWNER\n'
    response = client.post(url, data={'file': (io.BytesIO(bad), 'users.csv')}, content_type='multipart/form-data')
    body = response.get_json()
    assert response.status_code == 400
    assert body['error'] == 'The file has errors. Fix them and upload again.'
    assert body['errors'] == ["Row 2: Invalid role 'OWNER'. Must be ADMIN, TEACHER, or STUDENT"]


def test_import_json_rows(app, client, school_admin):
    school_id, _ = school_admin
    response = client.post(f'/api/schools/{school_id}/users/import', json={'users': [
        {'username': 'amy', 'firstName': 'Amy', 'lastName': 'Lee', 'role': 'STUDENT'},
        {'username': 'head', 'firstName': 'Dup', 'lastName': 'Head', 'role': 'ADMIN'},
    ]})
    data = response.get_json()['data']
    assert data['summary'] == {'total': 2, 'successful': 1, 'failed': 1, 'classes_created': 0}
    assert data['errors'][0]['error'] == 'Username already exists in this school'
    with app.app_context():
        assert SchoolMembership.query.filter_by(school_id=school_id).count() == 2

    response = client.post(f'/api/schools/{school_id}/users/import', json={'users': []})
    assert response.status_code == 400
    assert response.get_json()['error'] == 'No user data provided'
