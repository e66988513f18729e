import io
import json
import zipfile


def make_backup(admin_client, backup_type='full'):
    response = admin_client.post('/api/admin/backup', json={'backupType': backup_type})
    assert response.status_code == 201
    return response.get_json()


def restore(admin_client, data, clear_existing=False, filename='backup.zip'):
    return admin_client.post('/api/admin/backup/restore', data={
        'backup': (io.BytesIO(data), filename),
        'clearExisting': 'true' if clear_existing else 'false',
    }, content_type='multipart/form-data')


def coupon_codes(admin_client):
    return [c['code'] for c in admin_client.get('/api/admin/coupons').get_json()['coupons']]


def test_create_list_download_delete(admin_client, exam):
    created = make_backup(admin_client)
    filename = created['filename']
    assert filename.startswith('backup-') and filename.endswith('.zip')
    assert created['metadata']['tables']['questions'] == 4
    assert created['metadata']['createdBy'] == 'admin@test.local'

    questions_only = make_backup(admin_client, 'questions')
    assert questions_only['filename'].startswith('backup-questions-')
    assert set(questions_only['metadata']['tables']) == {'questions', 'question_options', 'exam_questions'}

    backups = admin_client.get('/api/admin/backup').get_json()['backups']
    assert {b['name']: b['type'] for b in backups} == {filename: 'full', questions_only['filename']: 'questions'}

    response = admin_client.get(f'/api/admin/backup/download/{filename}')
    assert response.status_code == 200
    with zipfile.ZipFile(io.BytesIO(response.data)) as archive:
        assert set(archive.namelist()) == {'metadata.json', 'database.json'}
        metadata = json.loads(archive.read('metadata.json'))
    assert metadata['backupType'] == 'full'
    assert metadata['version'] == '1.0'

    assert admin_client.delete(f'/api/admin/backup/delete/{filename}').status_code == 200
    assert admin_client.get(f'/api/admin/backup/download/{filename}').status_code == 404


def test_invalid_backup_names(admin_client):
    assert admin_client.get('/api/admin/backup/download/bad%20name.zip').status_code == 400
    assert admin_client.get('/api/admin/backup/download/backup.tar').status_code == 400
    assert admin_client.delete('/api/admin/backup/delete/missing.zip').status_code == 404


def test_restore_with_clear_existing(admin_client):
    admin_client.post('/api/admin/coupons', json={'code': 'KEEP', 'discount_value': 5})
    filename = make_backup(admin_client)['filename']
    archive = admin_client.get(f'/api/admin/backup/download/{filename}').data

    admin_client.post('/api/admin/coupons', json={'code': 'LATER', 'discount_value': 5})
    assert coupon_codes(admin_client) == ['KEEP', 'LATER']

    response = restore(admin_client, archive, clear_existing=True)
    assert response.status_code == 200
    body = response.get_json()
    assert body['restored']['coupons'] == 1
    assert body['restored']['users'] == 1
    assert coupon_codes(admin_client) == ['KEEP']


def test_restore_keeps_existing_rows(admin_client):
    admin_client.post('/api/admin/coupons', json={'code': 'KEEP', 'discount_value': 5})
    archive = admin_client.get(f"/api/admin/backup/download/{make_backup(admin_client)['filename']}").data
    admin_client.post('/api/admin/coupons', json={'code': 'LATER', 'discount_value': 5})

    body = restore(admin_client, archive).get_json()
    assert body['restored']['coupons'] == 0
    assert coupon_codes(admin_client) == ['KEEP', 'LATER']


def test_restore_rejects_bad_archives(admin_client):
    assert restore(admin_client, b'not a zip').status_code == 400
    assert restore(admin_client, b'irrelevant', filename='backup.txt').status_code == 400

    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, 'w') as archive:
        archive.writestr('metadata.json', '{}')
    assert restore(admin_client, buffer.getvalue()).status_code == 400

    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, 'w') as archive:
        archive.writestr('database.json', '{not json')
    assert restore(admin_client, buffer.getvalue()).status_code == 400


def test_backup_requires_admin(student_client):
    assert student_client.get('/api/admin/backup').status_code == 403


def test_questions_restore_keeps_exam_links(admin_client, exam):
    filename = make_backup(admin_client, 'questions')['filename']
    archive = admin_client.get(f'/api/admin/backup/download/{filename}').data

    response = restore(admin_client, archive, clear_existing=True)
    assert response.status_code == 200
    assert response.get_json()['restored']['exam_questions'] == 4
    assert 'users' not in response.get_json()['restored']

    detail = admin_client.get(f"/api/exams/{exam['id']}").get_json()
    assert len(detail['questions']) == 4
