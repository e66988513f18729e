import json
import logging

from flask import Blueprint, jsonify, request, session

from .auth import client_ip
from .db import format_ts, get_db_connection, iso, new_id, parse_ts, utcnow
from .decorators import is_staff, login_required, role_required
from .errors import ApiError
from .grading import answer_value, is_blank
from .lifecycle import (
    FINISHED_STATUSES, elapsed_seconds, expire_overdue_attempts, finalize_attempt, is_overdue,
    load_exam, load_exam_questions, load_progress, present_questions, record_event,
    stored_answers, upsert_answer,
)
from .settings import get_exam_settings, get_proctoring_settings
from .utils import as_bool, parse_count, require_json

logger = logging.getLogger(__name__)

bp = Blueprint('attempts', __name__, url_prefix='/api/exam-attempts')


def exam_controls(exam):
    return {
        'allow_answer_change': exam['allow_answer_change'],
        'show_question_counter': exam['show_question_counter'],
        'allow_answer_review': exam['allow_answer_review'],
    }


def get_attempt(conn, attempt_id):
    if not attempt_id:
        raise ApiError('Attempt ID required')
    attempt = conn.execute('SELECT * FROM exam_attempts WHERE id = ?', (attempt_id,)).fetchone()
    if attempt is None:
        raise ApiError('Attempt not found', 404)
    return attempt


def get_own_attempt(conn, attempt_id):
    """Attempt owned by the logged-in student; foreign attempts look missing"""
    if not attempt_id:
        raise ApiError('Attempt ID required')
    attempt = conn.execute(
        'SELECT * FROM exam_attempts WHERE id = ? AND student_id = ?',
        (attempt_id, session['user_id'])
    ).fetchone()
    if attempt is None:
        raise ApiError('Invalid attempt', 404)
    return attempt


def get_visible_attempt(conn, attempt_id):
    """Attempt readable by its owner or by staff"""
    attempt = get_attempt(conn, attempt_id)
    if not is_staff() and attempt['student_id'] != session['user_id']:
        raise ApiError('Access denied', 403)
    return attempt


def ensure_writable(attempt):
    if attempt['status'] != 'ongoing':
        raise ApiError('Exam already submitted', 400, status=attempt['status'])
    if is_overdue(attempt):
        raise ApiError('Exam time has expired', 400, expired=True)


def check_program_access(conn, exam_id, user_id):
    linked = conn.execute(
        'SELECT COUNT(*) AS count FROM exam_programs WHERE exam_id = ?', (exam_id,)
    ).fetchone()['count']
    if not linked:
        return
    enrolled = conn.execute('''
        SELECT 1 FROM exam_programs ep
        JOIN program_enrollments pe ON ep.program_id = pe.program_id
        WHERE ep.exam_id = ? AND pe.user_id = ? AND pe.status = 'active'
        LIMIT 1
    ''', (exam_id, user_id)).fetchone()
    if enrolled is None:
        raise ApiError(
            'This exam is not available in any of your enrolled programs', 403,
            requiresEnrollment=True,
        )


def check_attempt_limits(conn, exam_id, user_id, exam_settings, now):
    """Returns the number of finished attempts, raising when no new one is allowed"""
    placeholders = ','.join('?' for _ in FINISHED_STATUSES)
    finished = conn.execute(f'''
        SELECT COUNT(*) AS count, MAX(end_time) AS last_end
        FROM exam_attempts
        WHERE exam_id = ? AND student_id = ? AND status IN ({placeholders})
    ''', (exam_id, user_id, *FINISHED_STATUSES)).fetchone()

    count = finished['count'] or 0
    limit = exam_settings['maxExamAttemptsPerStudent']
    if count >= limit:
        raise ApiError(f'Maximum attempts ({limit}) reached for this exam', 403)

    if count > 0:
        if not exam_settings['allowExamRetake']:
            raise ApiError('Retaking this exam is not allowed', 403)
        last_end = parse_ts(finished['last_end'])
        cooldown = exam_settings['retakeCooldownDays']
        if last_end and cooldown > 0:
            days_since = (now - last_end).days
            if days_since < cooldown:
                remaining = cooldown - days_since
                raise ApiError(
                    f'You must wait {remaining} more day(s) before retaking this exam', 403,
                    daysRemaining=remaining,
                )
    return count


def attempt_payload(conn, exam, attempt, is_resume):
    exam_settings = get_exam_settings()
    questions = present_questions(
        load_exam_questions(conn, exam['id']), exam, attempt['student_id'], attempt['id'],
        exam_settings['shuffleQuestions'],
    )
    program = conn.execute('''
        SELECT p.instructions FROM exam_programs ep JOIN programs p ON ep.program_id = p.id
        WHERE ep.exam_id = ? AND p.instructions IS NOT NULL LIMIT 1
    ''', (exam['id'],)).fetchone()

    payload = {
        'success': True,
        'attemptId': attempt['id'],
        'exam': exam,
        'examControls': exam_controls(exam),
        'proctoringSettings': get_proctoring_settings(),
        'examSettings': exam_settings,
        'questions': questions,
        'startTime': iso(attempt['start_time']),
        'totalTimeSpent': elapsed_seconds(attempt),
        'durationSeconds': attempt['duration_minutes'] * 60,
        'isResume': is_resume,
        'examInstructions': exam['instructions'],
        'programInstructions': program['instructions'] if program else None,
    }
    if is_resume:
        payload['progress'] = load_progress(conn, attempt['id'])
    return payload


@bp.route('/start', methods=['POST'])
@role_required('student')
def start_attempt():
    """Start a new attempt or resume the ongoing one"""
    data = require_json()
    exam_id = data.get('examId')
    if not exam_id:
        raise ApiError('Exam ID is required')

    user_id = session['user_id']
    conn = get_db_connection()
    exam = load_exam(conn, exam_id)
    if exam is None or exam['status'] != 'published':
        raise ApiError('Exam not found', 404)

    check_program_access(conn, exam_id, user_id)

    now = utcnow()
    starts_at = parse_ts(exam['starts_at'])
    ends_at = parse_ts(exam['ends_at'])
    if starts_at and now < starts_at:
        raise ApiError('Exam has not started yet')
    if ends_at and now > ends_at:
        raise ApiError('Exam has ended')

    with conn:
        expire_overdue_attempts(conn, exam_id=exam_id, student_id=user_id, now=now)

    existing = conn.execute('''
        SELECT * FROM exam_attempts WHERE exam_id = ? AND student_id = ? AND status = 'ongoing'
        ORDER BY start_time DESC LIMIT 1
    ''', (exam_id, user_id)).fetchone()
    if existing is not None:
        logger.info("Resuming attempt %s (%ss elapsed)", existing['id'], elapsed_seconds(existing, now))
        return jsonify(attempt_payload(conn, exam, existing, is_resume=True))

    finished = check_attempt_limits(conn, exam_id, user_id, get_exam_settings(), now)

    attempt_id = new_id()
    with conn:
        registration = conn.execute(
            'SELECT id FROM exam_registrations WHERE exam_id = ? AND student_id = ?',
            (exam_id, user_id)
        ).fetchone()
        if registration is None:
            registration_id = new_id()
            conn.execute('''
                INSERT INTO exam_registrations (id, exam_id, student_id, status) VALUES (?, ?, ?, 'registered')
            ''', (registration_id, exam_id, user_id))
        else:
            registration_id = registration['id']

        conn.execute('''
            INSERT INTO exam_attempts
                (id, exam_id, student_id, exam_registration_id, start_time, duration_minutes,
                 status, attempt_number, ip_address, user_agent)
            VALUES (?, ?, ?, ?, ?, ?, 'ongoing', ?, ?, ?)
        ''', (
            attempt_id, exam_id, user_id, registration_id, format_ts(now),
            exam['duration_minutes'], finished + 1, client_ip(),
            request.headers.get('User-Agent', ''),
        ))
        conn.execute('''
            INSERT INTO exam_progress (id, attempt_id, current_question_index, answers_json, flagged_questions_json, last_saved_at)
            VALUES (?, ?, 0, '{}', '[]', ?)
        ''', (new_id(), attempt_id, format_ts(now)))

    attempt = conn.execute('SELECT * FROM exam_attempts WHERE id = ?', (attempt_id,)).fetchone()
    logger.info("Student %s started attempt %s on exam %s", user_id, attempt_id, exam_id)
    return jsonify(attempt_payload(conn, exam, attempt, is_resume=False))


@bp.route('/answer', methods=['POST'])
@role_required('student')
def save_answer():
    """Persist one answer as soon as the student gives it"""
    data = require_json()
    question_id = data.get('questionId')
    conn = get_db_connection()
    attempt = get_own_attempt(conn, data.get('attemptId'))
    ensure_writable(attempt)

    in_exam = conn.execute(
        'SELECT 1 FROM exam_questions WHERE exam_id = ? AND question_id = ?',
        (attempt['exam_id'], question_id)
    ).fetchone()
    if in_exam is None:
        raise ApiError('Invalid question', 404)

    answer = {}
    if data.get('answerText') is not None:
        answer['answerText'] = str(data['answerText'])
    if data.get('selectedOption') is not None:
        answer['selectedOption'] = data['selectedOption']

    exam = load_exam(conn, attempt['exam_id'])
    if not exam['allow_answer_change']:
        previous = stored_answers(conn, attempt['id']).get(question_id)
        if previous and not is_blank(answer_value(previous)) and previous != answer:
            raise ApiError('Answers cannot be changed for this exam', 409)

    time_spent = parse_count(data.get('timeSpent'), 'timeSpent')
    with conn:
        upsert_answer(conn, attempt['id'], question_id, answer,
                      is_flagged=as_bool(data.get('isFlagged')), time_spent=time_spent)
        conn.execute('UPDATE exam_attempts SET total_time_spent = ? WHERE id = ?', (time_spent, attempt['id']))

    return jsonify({'success': True, 'message': 'Answer saved successfully'})


@bp.route('/answer', methods=['GET'])
@login_required
def list_answers():
    conn = get_db_connection()
    attempt = get_visible_attempt(conn, request.args.get('attemptId'))

    include_key = is_staff()
    rows = conn.execute('''
        SELECT ea.question_id, ea.answer_text, ea.selected_option, ea.is_flagged,
               ea.is_correct, ea.marks_obtained, ea.time_spent_seconds, ea.updated_at,
               q.question_text, q.question_type, q.correct_answer
        FROM exam_answers ea
        JOIN questions q ON ea.question_id = q.id
        WHERE ea.attempt_id = ?
        ORDER BY ea.updated_at, q.id
    ''', (attempt['id'],)).fetchall()

    answers = []
    for row in rows:
        answer = dict(row)
        answer['is_flagged'] = bool(answer['is_flagged'])
        if not include_key:
            for key in ('is_correct', 'marks_obtained', 'correct_answer'):
                answer.pop(key)
        answers.append(answer)
    return jsonify({'success': True, 'answers': answers})


@bp.route('/autosave', methods=['POST'])
@role_required('student')
def autosave():
    """Heartbeat snapshot of the whole exam screen state"""
    data = require_json()
    conn = get_db_connection()
    attempt = get_own_attempt(conn, data.get('attemptId'))
    ensure_writable(attempt)

    answers = data.get('answers') or {}
    flagged = data.get('flaggedQuestions') or []
    if not isinstance(answers, dict) or not isinstance(flagged, list):
        raise ApiError('answers must be an object and flaggedQuestions a list')

    current_question = parse_count(data.get('currentQuestion'), 'currentQuestion')
    time_spent = parse_count(data.get('timeSpent'), 'timeSpent', default=None)

    now = format_ts(utcnow())
    with conn:
        conn.execute('''
            INSERT INTO exam_progress (id, attempt_id, current_question_index, answers_json, flagged_questions_json, last_saved_at)
            VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT(attempt_id) DO UPDATE SET
                current_question_index = excluded.current_question_index,
                answers_json = excluded.answers_json,
                flagged_questions_json = excluded.flagged_questions_json,
                last_saved_at = excluded.last_saved_at
        ''', (new_id(), attempt['id'], current_question,
              json.dumps(answers), json.dumps(flagged), now))
        if time_spent is not None:
            conn.execute('UPDATE exam_attempts SET total_time_spent = ? WHERE id = ?',
                         (time_spent, attempt['id']))

    logger.debug("Autosaved attempt %s (%d answers)", attempt['id'], len(answers))
    return jsonify({'success': True, 'message': 'Progress saved', 'timestamp': iso(now)})


@bp.route('/autosave', methods=['GET'])
@login_required
def load_saved_session():
    """Saved state for resuming; per-answer rows win over the snapshot"""
    conn = get_db_connection()
    attempt = get_visible_attempt(conn, request.args.get('attemptId'))

    progress = load_progress(conn, attempt['id']) or {
        'currentQuestion': 0, 'answers': {}, 'flaggedQuestions': [], 'lastSavedAt': None,
    }
    answers = dict(progress['answers'])
    answers.update(stored_answers(conn, attempt['id']))

    return jsonify({
        'success': True,
        'progressData': {
            'currentQuestion': progress['currentQuestion'],
            'answers': answers,
            'flaggedQuestions': progress['flaggedQuestions'],
            'lastSavedAt': iso(progress['lastSavedAt']),
        },
    })


def result_response(result, exam_settings):
    body = {'success': True, 'resultId': result['id'], 'showResults': exam_settings['showResultsImmediately']}
    if exam_settings['showResultsImmediately']:
        body['result'] = {
            'id': result['id'],
            'totalMarks': result['total_marks'],
            'obtainedMarks': result['obtained_marks'],
            'percentage': result['percentage'],
            'grade': result['grade'],
            'status': result['status'],
            'correctAnswers': result['correct_answers'],
            'incorrectAnswers': result['incorrect_answers'],
            'unanswered': result['unanswered'],
            'timeSpent': result['time_spent'],
        }
    else:
        body['message'] = 'Exam submitted successfully. Results will be published later.'
    return body


@bp.route('/submit', methods=['POST'])
@role_required('student')
def submit_attempt():
    data = require_json()
    attempt_id = data.get('attemptId')
    if not attempt_id:
        raise ApiError('Exam attempt ID is required.')

    conn = get_db_connection()
    attempt = conn.execute(
        'SELECT * FROM exam_attempts WHERE id = ? AND student_id = ?', (attempt_id, session['user_id'])
    ).fetchone()
    if attempt is None:
        raise ApiError("Exam attempt not found or you don't have permission to access it", 404)

    if attempt['status'] != 'ongoing':
        existing = conn.execute('SELECT id FROM exam_results WHERE attempt_id = ?', (attempt_id,)).fetchone()
        if existing is not None:
            return jsonify({
                'success': True,
                'resultId': existing['id'],
                'alreadySubmitted': True,
                'status': attempt['status'],
                'message': 'Exam was already submitted. Redirecting to results.',
            })
        raise ApiError(f"This exam has already been {attempt['status']}. You cannot submit it again.",
                       400, status=attempt['status'])

    answers = data.get('answers') or {}
    if not isinstance(answers, dict):
        raise ApiError('answers must be an object')
    time_spent = parse_count(data.get('timeSpent'), 'timeSpent', default=None)

    with conn:
        result = finalize_attempt(conn, attempt, answers, time_spent, status='submitted')

    return jsonify(result_response(result, get_exam_settings()))


@bp.route('/anti-cheat', methods=['POST'])
@bp.route('/events', methods=['POST'])
@login_required
def log_anti_cheat_event():
    data = require_json()
    event_type = (data.get('eventType') or '').strip()
    if not event_type:
        raise ApiError('eventType is required')

    conn = get_db_connection()
    attempt = get_attempt(conn, data.get('attemptId'))
    if session.get('user_type') == 'student' and attempt['student_id'] != session['user_id']:
        raise ApiError('Access denied', 403)

    metadata = data.get('metadata') or {}
    description = data.get('description') or (metadata.get('description') if isinstance(metadata, dict) else None)

    with conn:
        event_id, violations, result = record_event(
            conn, attempt, event_type[:50], data.get('severity'), description, metadata,
        )

    body = {'success': True, 'eventId': event_id, 'violationCount': violations, 'message': 'Event recorded'}
    if result is not None:
        body.update({
            'autoSubmitted': True,
            'resultId': result['id'],
            'warning': 'Too many violations detected. Exam auto-submitted.',
        })
    return jsonify(body)


@bp.route('/anti-cheat', methods=['GET'])
@bp.route('/events', methods=['GET'])
@role_required('admin', 'proctor')
def list_anti_cheat_events():
    conn = get_db_connection()
    attempt = get_attempt(conn, request.args.get('attemptId'))
    events = []
    for row in conn.execute('''
        SELECT * FROM anti_cheat_events WHERE attempt_id = ? ORDER BY created_at DESC, rowid DESC
    ''', (attempt['id'],)).fetchall():
        event = dict(row)
        event['metadata'] = json.loads(event.pop('metadata_json') or 'null')
        events.append(event)
    return jsonify({'success': True, 'events': events})
