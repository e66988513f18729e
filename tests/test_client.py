import threading
import time

import pytest
import requests

from conftest import ADMIN_PASSWORD, STUDENT_PASSWORD, correct_option_id, set_settings
from examcenter.client import ExamClientError, ExamSession, format_time

BASE_URL = 'http://exam.test'


class FakeClock:
    def __init__(self, now=None):
        self.now = time.time() if now is None else now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


class FakeResponse:
    def __init__(self, status_code, body):
        self.status_code = status_code
        self._body = body

    def json(self):
        if self._body is None:
            raise ValueError('No JSON body')
        return self._body


class FlaskHttp:
    """requests-style transport that routes through a Flask test client"""

    def __init__(self, client):
        self.client = client
        self.calls = []

    def request(self, method, url, json=None, params=None, timeout=None):
        path = url[len(BASE_URL):]
        self.calls.append((method, path))
        response = self.client.open(path, method=method, json=json, query_string=params)
        return FakeResponse(response.status_code, response.get_json(silent=True))


class RecordingHttp:
    def __init__(self):
        self.calls = []

    def request(self, method, url, json=None, params=None, timeout=None):
        self.calls.append((method, url, json))
        return FakeResponse(200, {'success': True, 'violationCount': len(self.calls)})


class BrokenHttp:
    def request(self, method, url, json=None, params=None, timeout=None):
        raise requests.ConnectionError('connection refused')


@pytest.fixture
def http(app, student):
    return FlaskHttp(app.test_client())


@pytest.fixture
def clock():
    return FakeClock()


def new_session(http, exam, clock):
    session = ExamSession(BASE_URL, exam['id'], http=http, clock=clock)
    session.login('student@test.local', STUDENT_PASSWORD)
    return session


def answer_key(exam):
    return {q['id']: q for q in exam['questions']}


def test_start_and_answer(http, exam, clock):
    session = new_session(http, exam, clock)
    body = session.start()
    assert body['isResume'] is False
    assert session.duration_seconds == 30 * 60
    assert len(session.questions) == 4
    assert 1795 <= session.remaining_seconds <= 1800

    key = answer_key(exam)
    question = session.current_question
    if question['options']:
        session.answer(question['id'], correct_option_id(key[question['id']]), is_option=True)
    else:
        session.answer(question['id'], 'Jupiter')
    assert question['id'] in session.answers

    session.next_question()
    assert session.current_index == 1
    session.previous_question()
    session.previous_question()
    assert session.current_index == 0
    with pytest.raises(ValueError):
        session.jump_to(4)


def test_save_progress_skips_unchanged_state(http, exam, clock):
    session = new_session(http, exam, clock)
    session.start()
    assert session.save_progress() is False

    session.toggle_flag()
    assert session.save_progress() is True
    assert session.save_status == 'saved'
    assert session.last_saved_at == clock.now
    assert session.save_progress() is False
    assert session.save_progress(force=True) is True


def test_resume_restores_state(http, exam, clock):
    first = new_session(http, exam, clock)
    first.start()
    index = next(i for i, q in enumerate(first.questions) if not q['options'])
    question_id = first.questions[index]['id']
    first.jump_to(index)
    first.toggle_flag()
    first.answer(question_id, 'draft answer')
    first.save_progress()

    second = ExamSession(BASE_URL, exam['id'], http=http, clock=clock)
    body = second.start()
    assert body['isResume'] is True
    assert second.attempt_id == first.attempt_id
    assert second.answers[question_id]['answerText'] == 'draft answer'
    assert second.flagged == {question_id}
    assert second.current_index == index
    assert second.save_progress() is False


def test_tick_submits_when_time_runs_out(http, exam, clock):
    session = new_session(http, exam, clock)
    session.start()
    assert session.tick() > 0
    assert not session.is_submitted

    clock.advance(1801)
    assert session.remaining_seconds == 0
    session.tick()
    assert session.is_submitted is True
    assert session.auto_submitted is True
    assert session.result['resultId']
    assert session.format_time() == '00:00'


def test_submit_is_idempotent(http, exam, clock):
    session = new_session(http, exam, clock)
    session.start()

    results = []
    threads = [threading.Thread(target=lambda: results.append(session.submit())) for _ in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert len({r['resultId'] for r in results}) == 1
    assert [path for _, path in http.calls].count('/api/exam-attempts/submit') == 1
    assert session.auto_submitted is False

    with pytest.raises(ExamClientError):
        session.answer(session.questions[0]['id'], 'late')


def test_submit_grades_answers(app, http, exam, clock):
    admin = app.test_client()
    admin.post('/api/auth/login', json={'email': 'admin@test.local', 'password': ADMIN_PASSWORD})
    set_settings(admin, {'examSettings.showResultsImmediately': True})

    session = new_session(http, exam, clock)
    session.start()
    key = answer_key(exam)
    for question in session.questions:
        if question['options']:
            session.answer(question['id'], correct_option_id(key[question['id']]), is_option=True)
        else:
            session.answer(question['id'], 'Jupiter')

    result = session.submit()['result']
    assert result['obtainedMarks'] == 10
    assert result['percentage'] == 100
    assert result['correctAnswers'] == 4


def test_server_auto_submit_ends_session(app, http, exam, clock):
    admin = app.test_client()
    admin.post('/api/auth/login', json={'email': 'admin@test.local', 'password': ADMIN_PASSWORD})
    set_settings(admin, {'antiCheat.autoSubmitOnViolation': True, 'antiCheat.maxViolations': 2})

    session = new_session(http, exam, clock)
    session.start()
    session.right_click()
    assert session.violation_count == 0
    session.tab_hidden()
    assert session.violation_count == 1
    assert not session.is_submitted

    body = session.window_blur()
    assert body['autoSubmitted'] is True
    assert session.is_submitted is True
    assert session.auto_submitted is True
    assert session.submit()['resultId'] == body['resultId']
    assert session.copy_attempt() is None


def test_face_events_respect_cooldown(clock):
    http = RecordingHttp()
    session = ExamSession(BASE_URL, 'exam-1', http=http, clock=clock)
    session.attempt_id = 'attempt-1'

    assert session.face_event('no_face', 0, timestamp=100) is not None
    assert session.face_event('no_face', 0, timestamp=103) is None
    assert session.face_event('multiple_faces', 2, timestamp=103) is not None
    assert session.face_event('no_face', 0, timestamp=106) is not None

    sent = [call[2] for call in http.calls]
    assert [event['eventType'] for event in sent] == ['no_face', 'multiple_faces', 'no_face']
    assert sent[1]['severity'] == 'critical'
    assert sent[1]['metadata'] == {'faceCount': 2}
    with pytest.raises(ValueError):
        session.face_event('glare', 1)


def test_network_errors(clock):
    session = ExamSession(BASE_URL, 'exam-1', http=BrokenHttp(), clock=clock)
    session.attempt_id = 'attempt-1'
    session.answers['q1'] = {'answerText': 'x'}

    assert session.save_progress() is False
    assert session.save_status == 'error'
    assert session.tab_hidden() is None
    with pytest.raises(ExamClientError) as excinfo:
        session.submit()
    assert excinfo.value.status_code is None
    assert session.is_submitted is False


def test_start_unknown_exam(http, clock):
    session = ExamSession(BASE_URL, 'no-such-exam', http=http, clock=clock)
    session.login('student@test.local', STUDENT_PASSWORD)
    with pytest.raises(ExamClientError) as excinfo:
        session.start()
    assert excinfo.value.status_code == 404
    assert excinfo.value.message == 'Exam not found'


def test_run_and_stop(http, exam, clock):
    session = new_session(http, exam, clock)
    session.start()
    session.run()
    assert len(session._timers) == 2
    session.stop()
    assert session._timers == []


@pytest.mark.parametrize('seconds, expected', [
    (0, '00:00'),
    (65, '01:05'),
    (3600, '01:00:00'),
    (3725, '01:02:05'),
    (-5, '00:00'),
])
def test_format_time(seconds, expected):
    assert format_time(seconds) == expected
