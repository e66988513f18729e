import pytest

from examcenter import create_app
from examcenter.auth import create_user
from examcenter.db import get_db_connection

ADMIN_EMAIL = 'admin@test.local'
ADMIN_PASSWORD = 'adminpass1'
STUDENT_PASSWORD = 'studentpass1'


@pytest.fixture
def app(tmp_path):
    app = create_app({
        'TESTING': True,
        'SECRET_KEY': 'test-secret',
        'DATABASE': str(tmp_path / 'examcenter.db'),
        'UPLOAD_FOLDER': str(tmp_path / 'uploads'),
        'BACKUP_FOLDER': str(tmp_path / 'backups'),
        'SETTINGS_CACHE_SECONDS': 0,
        'LOG_LEVEL': 'WARNING',
        'INIT_DB': True,
        'DEFAULT_ADMIN_EMAIL': ADMIN_EMAIL,
        'DEFAULT_ADMIN_PASSWORD': ADMIN_PASSWORD,
    })
    yield app


@pytest.fixture
def client(app):
    return app.test_client()


def login(client, email, password):
    response = client.post('/api/auth/login', json={'email': email, 'password': password})
    assert response.status_code == 200, response.get_json()
    return response.get_json()['user']


def add_user(app, email, password=STUDENT_PASSWORD, full_name='Test User', role='student', status='active'):
    with app.app_context():
        conn = get_db_connection()
        with conn:
            return create_user(conn, email, password, full_name, role=role, status=status)


@pytest.fixture
def admin_client(app):
    client = app.test_client()
    login(client, ADMIN_EMAIL, ADMIN_PASSWORD)
    return client


@pytest.fixture
def student(app):
    user_id = add_user(app, 'student@test.local', full_name='Sam Student')
    return {'id': user_id, 'email': 'student@test.local', 'password': STUDENT_PASSWORD}


@pytest.fixture
def student_client(app, student):
    client = app.test_client()
    login(client, student['email'], student['password'])
    return client


@pytest.fixture
def proctor_client(app):
    add_user(app, 'proctor@test.local', role='proctor', full_name='Pat Proctor')
    client = app.test_client()
    login(client, 'proctor@test.local', STUDENT_PASSWORD)
    return client


def set_settings(admin_client, values):
    response = admin_client.put('/api/admin/settings', json={'settings': values})
    assert response.status_code == 200, response.get_json()


SAMPLE_QUESTIONS = [
    {
        'question_text': 'What is 2 + 2?',
        'marks': 2,
        'options': [
            {'option_text': '3'},
            {'option_text': '4', 'is_correct': True},
            {'option_text': '5'},
            {'option_text': '22'},
        ],
    },
    {
        'question_text': 'The capital of France is',
        'marks': 2,
        'options': [
            {'option_text': 'Paris', 'is_correct': True},
            {'option_text': 'Rome'},
            {'option_text': 'Madrid'},
        ],
    },
    {
        'question_text': 'Water boils at 100C at sea level',
        'question_type': 'true_false',
        'marks': 2,
        'options': [
            {'option_text': 'True', 'is_correct': True},
            {'option_text': 'False'},
        ],
    },
    {
        'question_text': 'Name the largest planet',
        'question_type': 'short_answer',
        'marks': 4,
        'correct_answer': 'Jupiter',
    },
]


def create_exam(admin_client, **overrides):
    """Create a published exam and return it with the admin view of its questions"""
    payload = {
        'title': 'General Knowledge',
        'description': 'A short quiz',
        'instructions': 'Answer every question',
        'duration_minutes': 30,
        'passing_percentage': 50,
        'negative_marking': 0.5,
        'status': 'published',
        'questions': SAMPLE_QUESTIONS,
    }
    payload.update(overrides)
    response = admin_client.post('/api/admin/exams', json=payload)
    assert response.status_code == 201, response.get_json()
    exam_id = response.get_json()['examId']

    detail = admin_client.get(f'/api/exams/{exam_id}').get_json()
    return {'id': exam_id, 'exam': detail['exam'], 'questions': detail['questions']}


def correct_option_id(question):
    return next(o['id'] for o in question['options'] if o['is_correct'])


def wrong_option_id(question):
    return next(o['id'] for o in question['options'] if not o['is_correct'])


@pytest.fixture
def exam(admin_client):
    return create_exam(admin_client)


def start_attempt(student_client, exam_id):
    response = student_client.post('/api/exam-attempts/start', json={'examId': exam_id})
    assert response.status_code == 200, response.get_json()
    return response.get_json()


def backdate_attempt(app, attempt_id, minutes):
    """Move an attempt's start time into the past"""
    with app.app_context():
        conn = get_db_connection()
        with conn:
            conn.execute(
                "UPDATE exam_attempts SET start_time = datetime(start_time, ?) WHERE id = ?",
                (f'-{minutes} minutes', attempt_id),
            )
