"""
Exam-taking session client.

Drives one student's attempt against the HTTP API: start or resume, the
countdown derived from the server start time, per-answer persistence,
periodic autosave, anti-cheat event reporting and the single final submit
(manual, on timeout, or forced by the server after too many violations).
"""
import copy
import logging
import threading
import time
from datetime import datetime, timezone

import requests

logger = logging.getLogger(__name__)

# Browser-side signals and the severity each one is reported with
ANTI_CHEAT_EVENTS = {
    'window_blur': 'high',
    'tab_hidden': 'critical',
    'fullscreen_exit': 'critical',
    'copy_attempt': 'high',
    'paste_attempt': 'high',
    'right_click': 'medium',
}

FACE_EVENTS = {
    'no_face': 'high',
    'multiple_faces': 'critical',
}


class ExamClientError(Exception):
    """Request failure carrying the HTTP status and the server's message"""

    def __init__(self, message, status_code=None, payload=None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.payload = payload or {}


def parse_server_time(value):
    """Epoch seconds for an ISO 8601 timestamp sent by the server"""
    parsed = datetime.fromisoformat(value.replace('Z', '+00:00'))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.timestamp()


def format_time(seconds):
    seconds = max(0, int(seconds))
    hours, remainder = divmod(seconds, 3600)
    minutes, secs = divmod(remainder, 60)
    if hours:
        return f'{hours:02d}:{minutes:02d}:{secs:02d}'
    return f'{minutes:02d}:{secs:02d}'


class RepeatingTimer(threading.Thread):
    """Calls function every interval seconds until cancelled"""

    def __init__(self, interval, function, name=None):
        super().__init__(name=name, daemon=True)
        self.interval = interval
        self.function = function
        self.finished = threading.Event()

    def cancel(self):
        self.finished.set()

    def run(self):
        while not self.finished.wait(self.interval):
            try:
                self.function()
            except Exception:
                logger.exception("Timer %s callback failed", self.name)


class ExamSession:
    AUTOSAVE_INTERVAL = 30
    TICK_INTERVAL = 1
    FACE_EVENT_COOLDOWN = 5
    REQUEST_TIMEOUT = 15

    def __init__(self, base_url, exam_id, http=None, clock=time.time):
        self.base_url = base_url.rstrip('/')
        self.exam_id = exam_id
        self.http = http or requests.Session()
        self.clock = clock

        self.attempt_id = None
        self.exam = None
        self.questions = []
        self.start_timestamp = None
        self.duration_seconds = 0
        self.is_resume = False

        self.answers = {}
        self.flagged = set()
        self.current_index = 0

        self.save_status = 'idle'
        self.last_saved_at = None
        self._last_saved_state = None

        self.is_submitted = False
        self.auto_submitted = False
        self.result = None
        self.violation_count = 0
        self._last_face_event = {}

        self._state_lock = threading.RLock()
        self._submit_lock = threading.Lock()
        self._timers = []

    # -- transport ---------------------------------------------------------

    def _request(self, method, path, json=None, params=None):
        try:
            response = self.http.request(
                method, f'{self.base_url}{path}', json=json, params=params, timeout=self.REQUEST_TIMEOUT,
            )
        except requests.RequestException as e:
            raise ExamClientError(f'Network error: {e}') from e

        try:
            body = response.json()
        except ValueError:
            body = {}
        if response.status_code >= 400:
            message = body.get('message') or body.get('error') or f'HTTP {response.status_code}'
            raise ExamClientError(message, response.status_code, body)
        return body

    # -- lifecycle ---------------------------------------------------------

    def login(self, email, password):
        body = self._request('POST', '/api/auth/login', json={'email': email, 'password': password})
        return body.get('user')

    def start(self):
        """Start or resume the attempt; a resume restores saved answers and flags"""
        body = self._request('POST', '/api/exam-attempts/start', json={'examId': self.exam_id})

        with self._state_lock:
            self.attempt_id = body['attemptId']
            self.exam = body.get('exam') or {}
            self.questions = body.get('questions') or []
            self.start_timestamp = parse_server_time(body['startTime'])
            self.duration_seconds = int(
                body.get('durationSeconds') or self.exam.get('duration_minutes', 0) * 60
            )
            self.is_resume = bool(body.get('isResume'))
            self.is_submitted = False
            self.result = None

        if self.is_resume:
            saved = self._request('GET', '/api/exam-attempts/autosave', params={'attemptId': self.attempt_id})
            progress = saved.get('progressData') or {}
            with self._state_lock:
                self.answers = dict(progress.get('answers') or {})
                self.flagged = set(progress.get('flaggedQuestions') or [])
                self.current_index = min(int(progress.get('currentQuestion') or 0), max(len(self.questions) - 1, 0))
                self._last_saved_state = self._snapshot()
            logger.info("Resumed attempt %s with %d saved answers", self.attempt_id, len(self.answers))
        else:
            with self._state_lock:
                self.answers = {}
                self.flagged = set()
                self.current_index = 0
                self._last_saved_state = self._snapshot()
            logger.info("Started attempt %s", self.attempt_id)
        return body

    @property
    def elapsed_seconds(self):
        if self.start_timestamp is None:
            return 0
        return max(0, int(self.clock() - self.start_timestamp))

    @property
    def remaining_seconds(self):
        if self.start_timestamp is None:
            return self.duration_seconds
        return max(0, self.duration_seconds - self.elapsed_seconds)

    def format_time(self, seconds=None):
        return format_time(self.remaining_seconds if seconds is None else seconds)

    def _require_active(self):
        if self.attempt_id is None:
            raise ExamClientError('Exam has not been started')
        if self.is_submitted:
            raise ExamClientError('Exam already submitted')

    # -- answering and navigation -----------------------------------------

    def answer(self, question_id, value, is_option=False):
        """Record an answer locally and persist it immediately"""
        self._require_active()
        payload = {'selectedOption': value} if is_option else {'answerText': value}
        with self._state_lock:
            self.answers[question_id] = payload
        return self._request('POST', '/api/exam-attempts/answer', json={
            'attemptId': self.attempt_id,
            'questionId': question_id,
            'timeSpent': self.elapsed_seconds,
            'isFlagged': question_id in self.flagged,
            **payload,
        })

    @property
    def current_question(self):
        if not self.questions:
            return None
        return self.questions[self.current_index]

    def jump_to(self, index):
        if not 0 <= index < len(self.questions):
            raise ValueError(f'Question index out of range: {index}')
        with self._state_lock:
            self.current_index = index
        return self.current_question

    def next_question(self):
        return self.jump_to(min(self.current_index + 1, len(self.questions) - 1))

    def previous_question(self):
        return self.jump_to(max(self.current_index - 1, 0))

    def toggle_flag(self, question_id=None):
        if question_id is None:
            question_id = self.current_question['id']
        with self._state_lock:
            if question_id in self.flagged:
                self.flagged.discard(question_id)
                return False
            self.flagged.add(question_id)
            return True

    # -- autosave ------------------------------------------------------------

    def _snapshot(self):
        return copy.deepcopy(self.answers), sorted(self.flagged)

    def save_progress(self, force=False):
        """Autosave the exam state; skipped when nothing changed since the last save"""
        if self.attempt_id is None or self.is_submitted:
            return False

        with self._state_lock:
            state = self._snapshot()
            if not force and state == self._last_saved_state:
                return False
            current = self.current_index
            self.save_status = 'saving'

        answers, flagged = state
        try:
            self._request('POST', '/api/exam-attempts/autosave', json={
                'attemptId': self.attempt_id,
                'currentQuestion': current,
                'answers': answers,
                'flaggedQuestions': flagged,
                'timeSpent': self.elapsed_seconds,
            })
        except ExamClientError as e:
            logger.warning("Autosave failed for attempt %s: %s", self.attempt_id, e)
            self.save_status = 'error'
            return False

        with self._state_lock:
            self._last_saved_state = state
            self.save_status = 'saved'
            self.last_saved_at = self.clock()
        return True

    # -- anti-cheat --------------------------------------------------------

    def report_event(self, event_type, severity, description=None, metadata=None):
        """Send an anti-cheat event; ends the session when the server auto-submits"""
        if self.attempt_id is None or self.is_submitted:
            return None
        try:
            body = self._request('POST', '/api/exam-attempts/anti-cheat', json={
                'attemptId': self.attempt_id,
                'eventType': event_type,
                'severity': severity,
                'description': description,
                'metadata': metadata or {},
            })
        except ExamClientError as e:
            logger.warning("Could not report %s for attempt %s: %s", event_type, self.attempt_id, e)
            return None

        self.violation_count = body.get('violationCount', self.violation_count)
        if body.get('autoSubmitted'):
            with self._submit_lock:
                self.is_submitted = True
                self.auto_submitted = True
                self.result = {'success': True, 'resultId': body.get('resultId'), 'autoSubmitted': True}
            logger.warning("Attempt %s auto-submitted by the server after %s", self.attempt_id, event_type)
            self.stop()
        return body

    def _browser_event(self, event_type, description=None, metadata=None):
        return self.report_event(event_type, ANTI_CHEAT_EVENTS[event_type], description, metadata)

    def window_blur(self, description='Window lost focus'):
        return self._browser_event('window_blur', description)

    def tab_hidden(self, description='Exam tab hidden'):
        return self._browser_event('tab_hidden', description)

    def fullscreen_exit(self, description='Exited fullscreen'):
        return self._browser_event('fullscreen_exit', description)

    def copy_attempt(self, description='Copy attempt blocked'):
        return self._browser_event('copy_attempt', description)

    def paste_attempt(self, description='Paste attempt blocked'):
        return self._browser_event('paste_attempt', description)

    def right_click(self, description='Right click blocked'):
        return self._browser_event('right_click', description)

    def face_event(self, kind, count, timestamp=None):
        """Report a webcam face signal; repeats of one kind within the cooldown are dropped"""
        if kind not in FACE_EVENTS:
            raise ValueError(f'Unknown face event: {kind}')
        timestamp = self.clock() if timestamp is None else timestamp
        last = self._last_face_event.get(kind)
        if last is not None and timestamp - last < self.FACE_EVENT_COOLDOWN:
            return None
        self._last_face_event[kind] = timestamp
        description = 'No face detected' if kind == 'no_face' else f'Multiple faces detected: {count}'
        return self.report_event(kind, FACE_EVENTS[kind], description, {'faceCount': count})

    # -- submission --------------------------------------------------------

    def tick(self):
        """Advance the countdown; submits automatically once time is up"""
        if self.attempt_id is None or self.is_submitted:
            return self.remaining_seconds
        remaining = self.remaining_seconds
        if remaining <= 0:
            logger.info("Time is up for attempt %s, submitting", self.attempt_id)
            self.submit(auto=True)
        return remaining

    def submit(self, auto=False):
        """Submit once; later or concurrent calls return the first result"""
        with self._submit_lock:
            if self.is_submitted:
                return self.result
            if self.attempt_id is None:
                raise ExamClientError('Exam has not been started')

            with self._state_lock:
                answers = copy.deepcopy(self.answers)
            body = self._request('POST', '/api/exam-attempts/submit', json={
                'attemptId': self.attempt_id,
                'answers': answers,
                'timeSpent': min(self.elapsed_seconds, self.duration_seconds),
            })
            self.is_submitted = True
            self.auto_submitted = auto
            self.result = body

        self.stop()
        return body

    # -- timers --------------------------------------------------------------

    def run(self):
        """Start the countdown and autosave timers in background threads"""
        self.stop()
        self._timers = [
            RepeatingTimer(self.TICK_INTERVAL, self.tick, name='exam-tick'),
            RepeatingTimer(self.AUTOSAVE_INTERVAL, self.save_progress, name='exam-autosave'),
        ]
        for timer in self._timers:
            timer.start()

    def stop(self):
        timers, self._timers = self._timers, []
        for timer in timers:
            timer.cancel()
        current = threading.current_thread()
        for timer in timers:
            if timer is not current and timer.is_alive():
                timer.join(timeout=self.REQUEST_TIMEOUT)
