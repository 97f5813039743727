import base64
from io import BytesIO

from conftest import login, make_parent, make_student, PARENT_PASSWORD
from models import db, Student, User
import wallet


def test_admin_creates_student_with_generated_code(admin_client):
    response = admin_client.post('/admin/students', json={
        'first_name': 'Maria', 'last_name': 'Lopez', 'grade_level': 'Grade 5', 'section': 'Rizal',
    })

    assert response.status_code == 201
    student = response.get_json()['student']
    assert len(student['code']) == 8
    assert student['parent_user_id'] is None

    duplicate = admin_client.post('/admin/students', json={
        'first_name': 'maria', 'last_name': 'LOPEZ', 'grade_level': 'grade 5',
    })
    assert duplicate.status_code == 409


def test_admin_student_filters(app, admin_client):
    with app.app_context():
        parent = make_parent()
        make_student(parent, first_name='Ana', grade_level='Grade 1')
        make_student(None, first_name='Ben', grade_level='Grade 2')

    unlinked = admin_client.get('/admin/students?unlinked=true').get_json()['students']
    assert [s['first_name'] for s in unlinked] == ['Ben']

    by_grade = admin_client.get('/admin/students', query_string={'grade': 'Grade 1'}).get_json()['students']
    assert by_grade[0]['parent_name'] == 'Pat Parent'

    assert admin_client.get('/admin/students?search=ben').get_json()['total'] == 1


def test_parent_links_student_by_code(app, client):
    with app.app_context():
        make_parent(needs_onboarding=True)
        code = make_student(None).code

    login(client, 'parent', PARENT_PASSWORD)
    assert client.get('/parent/onboarding').get_json()['next_step'] == 'link_student'

    response = client.post('/api/students/link', json={'code': code.lower()})

    assert response.status_code == 200
    assert response.get_json()['redirect'] == '/parent/dashboard'
    assert [s['code'] for s in client.get('/api/students').get_json()['students']] == [code]

    again = client.post('/api/students/link', json={'code': code})
    assert again.status_code == 409


def test_link_rejects_unknown_and_taken_codes(app, client):
    with app.app_context():
        owner = make_parent(username='owner')
        taken = make_student(owner).code
        make_parent()

    login(client, 'parent', PARENT_PASSWORD)
    assert client.post('/api/students/link', json={'code': 'ZZZZZZZZ'}).status_code == 404
    response = client.post('/api/students/link', json={'code': taken})
    assert response.status_code == 409
    assert 'another parent' in response.get_json()['error']


def test_parent_updates_only_own_student(app, family, parent_client):
    with app.app_context():
        other_student = make_student(make_parent(username='other'), first_name='Ana').id

    response = parent_client.put(f'/api/students/{family.student_id}', json={'allergies': 'peanuts'})
    assert response.get_json()['student']['allergies'] == 'peanuts'

    assert parent_client.put(f'/api/students/{other_student}', json={'allergies': 'x'}).status_code == 404


def test_unlink_student(app, family, parent_client):
    response = parent_client.post(f'/api/students/{family.student_id}/unlink')
    assert response.status_code == 200
    with app.app_context():
        assert db.session.get(Student, family.student_id).parent_user_id is None


def test_unlink_blocked_by_open_orders(app, family, parent_client):
    with app.app_context():
        wallet.place_order(family.parent_id, family.parent_id, family.student_id,
                           [{'menu_item_id': family.items['Turon']}], family.week)

    assert parent_client.post(f'/api/students/{family.student_id}/unlink').status_code == 409


def test_student_with_orders_cannot_be_deleted(app, family, admin_client):
    with app.app_context():
        wallet.place_order(family.parent_id, family.parent_id, family.student_id,
                           [{'menu_item_id': family.items['Turon']}], family.week)
        spare = make_student(None, first_name='Spare').id

    response = admin_client.delete(f'/admin/students/{family.student_id}')
    assert response.status_code == 409
    assert 'deactivate' in response.get_json()['error']

    assert admin_client.post(f'/admin/students/{family.student_id}/toggle').get_json()['is_active'] is False
    assert admin_client.delete(f'/admin/students/{spare}').status_code == 200


def test_assign_student_to_parent(app, admin_client):
    with app.app_context():
        parent_id = make_parent(needs_onboarding=True).user_id
        student_id = make_student(None).id

    response = admin_client.post(f'/admin/students/{student_id}/assign', json={'parent_id': parent_id})

    assert response.get_json()['student']['parent_user_id'] == parent_id
    with app.app_context():
        assert db.session.get(User, parent_id).needs_onboarding is False


def test_student_qr_code(app, admin_client):
    with app.app_context():
        student = make_student(None)
        student_id, code = student.id, student.code

    data = admin_client.get(f'/admin/students/{student_id}/qr').get_json()
    assert data['code'] == code
    assert base64.b64decode(data['qr_code']).startswith(b'\x89PNG')

    png = admin_client.get(f'/admin/students/{student_id}/qr?format=png')
    assert png.mimetype == 'image/png'


def test_import_students_from_csv(app, admin_client):
    with app.app_context():
        make_parent()
        make_student(None, first_name='Existing', last_name='Kid', grade_level='Grade 4')

    csv_data = (
        'First Name,Last Name,Grade Level,Section,Parent Email\n'
        'Carlo,Diaz,Grade 4,Mabini,parent@example.com\n'
        'Existing,Kid,Grade 4,,\n'
        'Dina,Ramos,Grade 2,,nobody@example.com\n'
        ',,,,\n'
        'Eli,Santos,Grade 1,,\n'
    ).encode()

    response = admin_client.post('/admin/students/import',
                                 data={'file': (BytesIO(csv_data), 'students.csv')},
                                 content_type='multipart/form-data')

    result = response.get_json()
    assert response.status_code == 200
    assert result['imported'] == 2
    assert result['skipped'] == 1
    assert result['errors'] == [{'row': 4, 'error': 'No parent account for nobody@example.com'}]
    with app.app_context():
        carlo = Student.query.filter_by(first_name='Carlo').one()
        assert carlo.parent.user.email == 'parent@example.com'


def test_import_rejects_unsupported_files(admin_client):
    response = admin_client.post('/admin/students/import',
                                 data={'file': (BytesIO(b'data'), 'students.xls')},
                                 content_type='multipart/form-data')
    assert response.status_code == 400

    missing = admin_client.post('/admin/students/import', data={}, content_type='multipart/form-data')
    assert missing.get_json()['error'] == 'No file uploaded'


def test_import_rejects_csv_that_is_not_utf8(admin_client):
    response = admin_client.post('/admin/students/import',
                                 data={'file': (BytesIO(b'first_name,last_name,grade_level\n\xff\xfeJ,C,G3\n'),
                                                'students.csv')},
                                 content_type='multipart/form-data')
    assert response.status_code == 400
    assert 'UTF-8' in response.get_json()['error']


def test_export_students(app, admin_client):
    with app.app_context():
        make_student(None, first_name='Carlo')

    response = admin_client.get('/admin/students/export')
    assert response.mimetype == 'text/csv'
    lines = response.get_data(as_text=True).splitlines()
    assert lines[0].startswith('code,first_name,last_name')
    assert 'Carlo' in lines[1]

    xlsx = admin_client.get('/admin/students/export?format=xlsx')
    assert xlsx.data[:2] == b'PK'
