"""
Exam attempt lifecycle: question loading, grading on submission, anti-cheat
event recording with violation-triggered auto-submit, and expiry of attempts
whose time ran out while the student was away.

Functions here take an open connection and never commit; callers wrap them
in ``with conn:`` so each operation lands as one transaction.
"""
import json
import logging
from datetime import timedelta

from flask import current_app

from .db import format_ts, new_id, parse_ts, utcnow
from .grading import answer_value, grade_answer, is_blank, summarize
from .settings import get_exam_settings, get_proctoring_settings
from .shuffle import order_questions, shuffle_question_options

logger = logging.getLogger(__name__)

FINISHED_STATUSES = ('submitted', 'auto_submitted', 'evaluated')
SEVERITIES = ('low', 'medium', 'high', 'critical')
VIOLATION_SEVERITIES = ('high', 'critical')

EXAM_FLAGS = (
    'randomize_questions', 'proctoring_enabled', 'allow_answer_change',
    'show_question_counter', 'allow_answer_review',
)


def load_exam(conn, exam_id):
    row = conn.execute('SELECT * FROM exams WHERE id = ?', (exam_id,)).fetchone()
    if row is None:
        return None
    exam = dict(row)
    for flag in EXAM_FLAGS:
        exam[flag] = bool(exam[flag])
    return exam


def load_exam_questions(conn, exam_id):
    """Questions of an exam in sequence order, each with all of its options"""
    questions = [dict(row) for row in conn.execute('''
        SELECT q.*, eq.sequence AS exam_sequence
        FROM exam_questions eq
        JOIN questions q ON eq.question_id = q.id
        WHERE eq.exam_id = ?
        ORDER BY eq.sequence, q.id
    ''', (exam_id,)).fetchall()]
    return attach_options(conn, questions)


def attach_options(conn, questions):
    """Fill in each question dict's ``options`` in display order"""
    if not questions:
        return []

    placeholders = ','.join('?' for _ in questions)
    options_by_question = {}
    # ORDER BY id as a tiebreaker keeps the pre-shuffle order stable
    for row in conn.execute(f'''
        SELECT id, question_id, option_text, option_label, is_correct, sequence
        FROM question_options
        WHERE question_id IN ({placeholders})
        ORDER BY question_id, sequence, id
    ''', [q['id'] for q in questions]).fetchall():
        option = dict(row)
        option['is_correct'] = bool(option['is_correct'])
        options_by_question.setdefault(option['question_id'], []).append(option)

    for question in questions:
        question['options'] = options_by_question.get(question['id'], [])
        question['randomize_options'] = bool(question['randomize_options'])
        if 'in_bank' in question:
            question['in_bank'] = bool(question['in_bank'])
    return questions


def effective_options(question, user_id, attempt_id, shuffle_enabled):
    """Options in the order this student sees them for this attempt"""
    return shuffle_question_options(
        question['options'],
        user_id,
        question['id'],
        shuffle_enabled and question['randomize_options'],
        attempt_id,
    )


def present_questions(questions, exam, user_id, attempt_id, shuffle_enabled):
    """Student-facing question list: ordered, shuffled, stripped of answers"""
    presented = []
    ordered = order_questions(questions, user_id, exam['id'], attempt_id, exam['randomize_questions'])
    for index, question in enumerate(ordered):
        options = effective_options(question, user_id, attempt_id, shuffle_enabled)
        question_type = question['question_type'] or ('mcq' if options else 'short_answer')
        presented.append({
            'id': question['id'],
            'index': index,
            'question_text': question['question_text'],
            'question_type': question_type,
            'question_type_name': question_type.upper() if question_type == 'mcq' else question_type,
            'marks': question['marks'],
            'options': [
                {
                    'id': option['id'],
                    'option_text': option['option_text'],
                    'option_label': option['option_label'],
                }
                for option in options
            ],
        })
    return presented


def attempt_deadline(attempt):
    return parse_ts(attempt['start_time']) + timedelta(minutes=attempt['duration_minutes'])


def elapsed_seconds(attempt, now=None):
    now = now or utcnow()
    return max(0, int((now - parse_ts(attempt['start_time'])).total_seconds()))


def is_overdue(attempt, now=None, grace_seconds=None):
    if grace_seconds is None:
        grace_seconds = current_app.config['ANSWER_GRACE_SECONDS']
    now = now or utcnow()
    return now > attempt_deadline(attempt) + timedelta(seconds=grace_seconds)


def load_progress(conn, attempt_id):
    row = conn.execute('SELECT * FROM exam_progress WHERE attempt_id = ?', (attempt_id,)).fetchone()
    if row is None:
        return None
    return {
        'currentQuestion': row['current_question_index'] or 0,
        'answers': json.loads(row['answers_json'] or '{}'),
        'flaggedQuestions': json.loads(row['flagged_questions_json'] or '[]'),
        'lastSavedAt': row['last_saved_at'],
    }


def stored_answers(conn, attempt_id):
    """Answers persisted one by one, keyed by question id"""
    answers = {}
    for row in conn.execute('''
        SELECT question_id, answer_text, selected_option, is_flagged
        FROM exam_answers WHERE attempt_id = ?
    ''', (attempt_id,)).fetchall():
        answer = {}
        if row['answer_text'] is not None:
            answer['answerText'] = row['answer_text']
        if row['selected_option'] is not None:
            answer['selectedOption'] = row['selected_option']
        answers[row['question_id']] = answer
    return answers


def upsert_answer(conn, attempt_id, question_id, answer, is_flagged=False, time_spent=0,
                  is_correct=False, marks=0.0):
    answer = answer or {}
    conn.execute('''
        INSERT INTO exam_answers
            (id, attempt_id, question_id, answer_text, selected_option, is_flagged,
             is_correct, marks_obtained, time_spent_seconds, updated_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        ON CONFLICT(attempt_id, question_id) DO UPDATE SET
            answer_text = excluded.answer_text,
            selected_option = excluded.selected_option,
            is_flagged = excluded.is_flagged,
            is_correct = excluded.is_correct,
            marks_obtained = excluded.marks_obtained,
            time_spent_seconds = excluded.time_spent_seconds,
            updated_at = excluded.updated_at
    ''', (
        new_id(), attempt_id, question_id,
        answer.get('answerText'), answer.get('selectedOption'),
        1 if is_flagged else 0, 1 if is_correct else 0, marks,
        time_spent or 0, format_ts(utcnow()),
    ))


def finalize_attempt(conn, attempt, answers=None, time_spent=None, status='submitted'):
    """Grade an ongoing attempt, store its result and close it.

    Answers come from, in increasing precedence: the autosaved progress
    snapshot, the per-answer rows, and the answers sent with the request.
    """
    exam = load_exam(conn, attempt['exam_id'])
    questions = {q['id']: q for q in load_exam_questions(conn, attempt['exam_id'])}
    shuffle_enabled = get_exam_settings()['shuffleQuestions']

    merged = {}
    progress = load_progress(conn, attempt['id'])
    if progress:
        merged.update(progress['answers'])
    merged.update(stored_answers(conn, attempt['id']))
    merged.update(answers or {})

    flagged = set(progress['flaggedQuestions']) if progress else set()
    graded = {}
    for question_id, answer in merged.items():
        question = questions.get(question_id)
        if question is None or not isinstance(answer, dict):
            continue
        value = answer_value(answer)
        if is_blank(value):
            upsert_answer(conn, attempt['id'], question_id, answer, question_id in flagged)
            continue

        options = effective_options(question, attempt['student_id'], attempt['id'], shuffle_enabled)
        is_correct, marks = grade_answer(question, question['options'], options, value, exam['negative_marking'])
        graded[question_id] = (is_correct, marks)
        upsert_answer(conn, attempt['id'], question_id, answer, question_id in flagged,
                      is_correct=is_correct, marks=marks)

    total_marks = exam['total_marks'] or sum(q['marks'] or 0 for q in questions.values())
    summary = summarize(graded, len(questions), total_marks, exam['passing_percentage'])

    limit = attempt['duration_minutes'] * 60
    if time_spent is None:
        time_spent = elapsed_seconds(attempt)
    time_spent = max(0, min(int(time_spent), limit))

    now = format_ts(utcnow())
    conn.execute('''
        UPDATE exam_attempts SET status = ?, end_time = ?, total_time_spent = ? WHERE id = ?
    ''', (status, now, time_spent, attempt['id']))

    published = get_exam_settings()['showResultsImmediately']
    result = {
        'id': new_id(),
        'exam_id': attempt['exam_id'],
        'student_id': attempt['student_id'],
        'attempt_id': attempt['id'],
        'attempt_number': attempt['attempt_number'],
        'total_marks': total_marks,
        'time_spent': time_spent,
        'negative_marking_applied': exam['negative_marking'] or 0,
        'is_published': 1 if published else 0,
        'result_date': now,
    }
    result.update(summary)
    conn.execute('''
        INSERT INTO exam_results
            (id, exam_id, student_id, attempt_id, attempt_number, total_marks, obtained_marks,
             percentage, grade, correct_answers, incorrect_answers, unanswered, time_spent,
             status, negative_marking_applied, is_published, result_date)
        VALUES (:id, :exam_id, :student_id, :attempt_id, :attempt_number, :total_marks,
                :obtained_marks, :percentage, :grade, :correct_answers, :incorrect_answers,
                :unanswered, :time_spent, :status, :negative_marking_applied, :is_published,
                :result_date)
    ''', result)

    logger.info(
        "Attempt %s %s: %.2f/%s (%.2f%%, %s)",
        attempt['id'], status, result['obtained_marks'], total_marks,
        result['percentage'], result['status'],
    )
    return result


def normalize_severity(severity):
    severity = (severity or 'medium').lower()
    if severity == 'warning':
        return 'medium'
    return severity if severity in SEVERITIES else 'medium'


def record_event(conn, attempt, event_type, severity, description=None, metadata=None):
    """Store an anti-cheat event; auto-submit the attempt past the violation limit.

    Returns (event_id, violation_count, result) where result is the exam
    result when this event triggered an auto-submit, otherwise None.
    """
    event_id = new_id()
    severity = normalize_severity(severity)
    conn.execute('''
        INSERT INTO anti_cheat_events (id, attempt_id, event_type, severity, description, metadata_json, created_at)
        VALUES (?, ?, ?, ?, ?, ?, ?)
    ''', (event_id, attempt['id'], event_type, severity, description,
          json.dumps(metadata) if metadata else None, format_ts(utcnow())))

    placeholders = ','.join('?' for _ in VIOLATION_SEVERITIES)
    violations = conn.execute(f'''
        SELECT COUNT(*) AS count FROM anti_cheat_events
        WHERE attempt_id = ? AND severity IN ({placeholders})
    ''', (attempt['id'], *VIOLATION_SEVERITIES)).fetchone()['count']

    proctoring = get_proctoring_settings()
    if (attempt['status'] == 'ongoing'
            and proctoring['autoSubmitOnViolation']
            and violations >= proctoring['maxViolations']):
        logger.warning(
            "Attempt %s reached %d violations, auto-submitting", attempt['id'], violations
        )
        result = finalize_attempt(conn, attempt, status='auto_submitted')
        return event_id, violations, result

    return event_id, violations, None


def expire_overdue_attempts(conn, exam_id=None, student_id=None, now=None):
    """Auto-submit ongoing attempts whose deadline (plus grace) has passed"""
    query = "SELECT * FROM exam_attempts WHERE status = 'ongoing'"
    params = []
    if exam_id:
        query += ' AND exam_id = ?'
        params.append(exam_id)
    if student_id:
        query += ' AND student_id = ?'
        params.append(student_id)

    expired = []
    for attempt in conn.execute(query, params).fetchall():
        if is_overdue(attempt, now):
            finalize_attempt(conn, attempt, status='auto_submitted')
            expired.append(attempt['id'])
    if expired:
        logger.info("Expired %d overdue attempt(s)", len(expired))
    return expired
