import logging
import string

from flask import Blueprint, jsonify, request, session

from .db import format_ts, get_db_connection, new_id, parse_ts, utcnow
from .decorators import is_staff, login_required, role_required
from .errors import ApiError
from .lifecycle import EXAM_FLAGS, attach_options, load_exam, load_exam_questions
from .settings import get_payment_settings
from .utils import as_bool, pagination_meta, parse_pagination, require_json

logger = logging.getLogger(__name__)

bp = Blueprint('exams', __name__)

EXAM_STATUSES = ('draft', 'published', 'archived')
PROGRAM_STATUSES = ('draft', 'published', 'archived')
QUESTION_TYPES = ('mcq', 'true_false', 'short_answer', 'essay')

# request key -> column, with the converter applied to the value
EXAM_FIELDS = {
    'title': ('title', str),
    'description': ('description', str),
    'instructions': ('instructions', str),
    'duration_minutes': ('duration_minutes', int),
    'total_marks': ('total_marks', float),
    'passing_percentage': ('passing_percentage', float),
    'negative_marking': ('negative_marking', float),
}


def _timestamp(value, field):
    if value in (None, ''):
        return None
    try:
        return format_ts(parse_ts(value))
    except (TypeError, ValueError):
        raise ApiError(f'{field} must be an ISO 8601 timestamp')


def exam_values(data, partial=False):
    """Validated column values for an exam insert or update"""
    values = {}
    for key, (column, convert) in EXAM_FIELDS.items():
        camel = ''.join(part.capitalize() if i else part for i, part in enumerate(key.split('_')))
        raw = data.get(key, data.get(camel))
        if raw is None:
            continue
        try:
            values[column] = convert(raw)
        except (TypeError, ValueError):
            raise ApiError(f'{key} has an invalid value')

    for flag in EXAM_FLAGS:
        if flag in data:
            values[flag] = 1 if as_bool(data[flag]) else 0

    for key in ('starts_at', 'ends_at'):
        if key in data:
            values[key] = _timestamp(data[key], key)

    if 'status' in data:
        if data['status'] not in EXAM_STATUSES:
            raise ApiError(f'Status must be one of: {", ".join(EXAM_STATUSES)}')
        values['status'] = data['status']

    if not partial and not (values.get('title') or '').strip():
        raise ApiError('Exam title is required')
    if 'duration_minutes' in values and values['duration_minutes'] <= 0:
        raise ApiError('Duration must be a positive number of minutes')
    if 'passing_percentage' in values and not 0 <= values['passing_percentage'] <= 100:
        raise ApiError('Passing percentage must be between 0 and 100')
    if values.get('starts_at') and values.get('ends_at') and values['starts_at'] >= values['ends_at']:
        raise ApiError('Exam end must be after its start')
    return values


def create_question(conn, item, label='Question', in_bank=False):
    """Validate and insert one question with its options; returns (id, marks)"""
    if not isinstance(item, dict):
        raise ApiError(f'{label} must be an object')
    text = (item.get('question_text') or item.get('questionText') or '').strip()
    if not text:
        raise ApiError(f'{label} has no text')
    question_type = item.get('question_type') or item.get('questionType') or 'mcq'
    if question_type not in QUESTION_TYPES:
        raise ApiError(f'{label} has an unknown type: {question_type}')

    options = item.get('options') or []
    if question_type in ('mcq', 'true_false'):
        if len(options) < 2:
            raise ApiError(f'{label} needs at least two options')
        if sum(1 for o in options if isinstance(o, dict) and as_bool(o.get('is_correct', o.get('isCorrect')))) != 1:
            raise ApiError(f'{label} needs exactly one correct option')

    negative = item.get('negative_marks', item.get('negativeMarks'))
    try:
        marks = float(item.get('marks', 1))
        negative = float(negative) if negative is not None else None
    except (TypeError, ValueError):
        raise ApiError(f'{label} has invalid marks')

    question_id = new_id()
    conn.execute('''
        INSERT INTO questions
            (id, question_text, question_type, marks, negative_marks, correct_answer, explanation,
             randomize_options, in_bank, created_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
    ''', (
        question_id, text, question_type, marks, negative,
        item.get('correct_answer', item.get('correctAnswer')),
        item.get('explanation'),
        1 if as_bool(item.get('randomize_options', item.get('randomizeOptions')), True) else 0,
        1 if in_bank else 0,
        format_ts(utcnow()),
    ))

    for position, option in enumerate(options):
        if not isinstance(option, dict):
            option = {'option_text': str(option)}
        conn.execute('''
            INSERT INTO question_options (id, question_id, option_text, option_label, is_correct, sequence)
            VALUES (?, ?, ?, ?, ?, ?)
        ''', (
            new_id(), question_id,
            str(option.get('option_text', option.get('text', ''))),
            option.get('option_label') or string.ascii_uppercase[position % 26],
            1 if as_bool(option.get('is_correct', option.get('isCorrect'))) else 0,
            position,
        ))
    return question_id, marks


def insert_questions(conn, exam_id, questions):
    """Create questions with their options and attach them to the exam in order"""
    if not isinstance(questions, list):
        raise ApiError('questions must be a list')

    total = 0.0
    for sequence, item in enumerate(questions):
        question_id, marks = create_question(conn, item, f'Question {sequence + 1}')
        conn.execute('''
            INSERT INTO exam_questions (exam_id, question_id, sequence) VALUES (?, ?, ?)
        ''', (exam_id, question_id, sequence))
        total += marks
    return total


def remove_questions(conn, exam_id, keep=()):
    """Detach an exam's questions, deleting inline ones no other exam uses"""
    question_ids = [row['question_id'] for row in conn.execute(
        'SELECT question_id FROM exam_questions WHERE exam_id = ?', (exam_id,)
    ).fetchall()]
    conn.execute('DELETE FROM exam_questions WHERE exam_id = ?', (exam_id,))
    for question_id in question_ids:
        if question_id in keep:
            continue
        conn.execute('''
            DELETE FROM questions WHERE id = ? AND NOT COALESCE(in_bank, 0)
            AND NOT EXISTS (SELECT 1 FROM exam_questions WHERE question_id = ?)
        ''', (question_id, question_id))


def set_exam_programs(conn, exam_id, program_ids):
    if not isinstance(program_ids, list):
        raise ApiError('programIds must be a list')
    conn.execute('DELETE FROM exam_programs WHERE exam_id = ?', (exam_id,))
    for program_id in program_ids:
        if conn.execute('SELECT 1 FROM programs WHERE id = ?', (program_id,)).fetchone() is None:
            raise ApiError(f'Program not found: {program_id}', 404)
        conn.execute('INSERT INTO exam_programs (exam_id, program_id) VALUES (?, ?)', (exam_id, program_id))


def has_attempts(conn, exam_id):
    return conn.execute('SELECT 1 FROM exam_attempts WHERE exam_id = ? LIMIT 1', (exam_id,)).fetchone() is not None


def exam_program_ids(conn, exam_id):
    return [row['program_id'] for row in conn.execute(
        'SELECT program_id FROM exam_programs WHERE exam_id = ?', (exam_id,)
    ).fetchall()]


def student_can_access(conn, exam_id, user_id):
    """True when the exam is open to everyone or the student holds an active enrollment"""
    program_ids = exam_program_ids(conn, exam_id)
    if not program_ids:
        return True
    placeholders = ','.join('?' for _ in program_ids)
    row = conn.execute(f'''
        SELECT 1 FROM program_enrollments
        WHERE user_id = ? AND status = 'active' AND program_id IN ({placeholders})
        LIMIT 1
    ''', (user_id, *program_ids)).fetchone()
    return row is not None


@bp.route('/api/exams')
@login_required
def list_exams():
    page, limit, offset = parse_pagination(request.args)
    conn = get_db_connection()

    where, params = [], []
    if is_staff():
        status = request.args.get('status')
        if status:
            where.append('e.status = ?')
            params.append(status)
    else:
        where.append("e.status = 'published'")
    search = (request.args.get('search') or '').strip()
    if search:
        where.append('(e.title LIKE ? OR e.description LIKE ?)')
        params.extend([f'%{search}%', f'%{search}%'])
    clause = f"WHERE {' AND '.join(where)}" if where else ''

    total = conn.execute(f'SELECT COUNT(*) AS count FROM exams e {clause}', params).fetchone()['count']
    rows = conn.execute(f'''
        SELECT e.*,
               (SELECT COUNT(*) FROM exam_questions eq WHERE eq.exam_id = e.id) AS question_count
        FROM exams e
        {clause}
        ORDER BY e.created_at DESC, e.title
        LIMIT ? OFFSET ?
    ''', (*params, limit, offset)).fetchall()

    exams = []
    for row in rows:
        exam = dict(row)
        for flag in EXAM_FLAGS:
            exam[flag] = bool(exam[flag])
        exam['program_ids'] = exam_program_ids(conn, exam['id'])
        if session.get('user_type') == 'student':
            exam['isEnrolled'] = student_can_access(conn, exam['id'], session['user_id'])
            exam['attemptCount'] = conn.execute('''
                SELECT COUNT(*) AS count FROM exam_attempts WHERE exam_id = ? AND student_id = ?
            ''', (exam['id'], session['user_id'])).fetchone()['count']
        exams.append(exam)

    return jsonify({'success': True, 'exams': exams, 'pagination': pagination_meta(page, limit, total)})


@bp.route('/api/exams/<exam_id>')
@login_required
def get_exam(exam_id):
    conn = get_db_connection()
    exam = load_exam(conn, exam_id)
    if exam is None or (not is_staff() and exam['status'] != 'published'):
        raise ApiError('Exam not found', 404)

    questions = load_exam_questions(conn, exam_id)
    exam['question_count'] = len(questions)
    exam['program_ids'] = exam_program_ids(conn, exam_id)
    body = {'success': True, 'exam': exam}
    if is_staff():
        body['questions'] = questions
    else:
        exam['isEnrolled'] = student_can_access(conn, exam_id, session['user_id'])
    return jsonify(body)


@bp.route('/api/admin/exams', methods=['POST'])
@role_required('admin')
def create_exam():
    data = require_json()
    values = exam_values(data)
    exam_id = new_id()
    values.update({'id': exam_id, 'created_by': session['user_id'], 'created_at': format_ts(utcnow())})

    conn = get_db_connection()
    with conn:
        columns = ', '.join(values)
        placeholders = ', '.join(f':{column}' for column in values)
        conn.execute(f'INSERT INTO exams ({columns}) VALUES ({placeholders})', values)

        question_marks = insert_questions(conn, exam_id, data.get('questions') or [])
        if not values.get('total_marks'):
            conn.execute('UPDATE exams SET total_marks = ? WHERE id = ?', (question_marks, exam_id))
        set_exam_programs(conn, exam_id, data.get('programIds') or data.get('program_ids') or [])

    logger.info("Exam %s created by %s", exam_id, session['user_id'])
    return jsonify({'success': True, 'examId': exam_id, 'message': 'Exam created successfully'}), 201


@bp.route('/api/admin/exams/<exam_id>', methods=['PUT'])
@role_required('admin')
def update_exam(exam_id):
    data = require_json()
    conn = get_db_connection()
    if load_exam(conn, exam_id) is None:
        raise ApiError('Exam not found', 404)

    values = exam_values(data, partial=True)
    replace_questions = 'questions' in data
    if replace_questions and has_attempts(conn, exam_id):
        raise ApiError('Questions cannot be replaced once students have attempted the exam', 409)

    with conn:
        if values:
            assignments = ', '.join(f'{column} = :{column}' for column in values)
            conn.execute(f'UPDATE exams SET {assignments} WHERE id = :exam_id', {**values, 'exam_id': exam_id})
        if replace_questions:
            remove_questions(conn, exam_id)
            question_marks = insert_questions(conn, exam_id, data['questions'] or [])
            if not values.get('total_marks'):
                conn.execute('UPDATE exams SET total_marks = ? WHERE id = ?', (question_marks, exam_id))
        if 'programIds' in data or 'program_ids' in data:
            set_exam_programs(conn, exam_id, data.get('programIds', data.get('program_ids')) or [])

    return jsonify({'success': True, 'message': 'Exam updated successfully'})


@bp.route('/api/admin/exams/<exam_id>/status', methods=['PATCH'])
@role_required('admin')
def update_exam_status(exam_id):
    data = require_json()
    status = data.get('status')
    if not status:
        raise ApiError('Status is required')
    if status not in EXAM_STATUSES:
        raise ApiError('Invalid status')

    conn = get_db_connection()
    if load_exam(conn, exam_id) is None:
        raise ApiError('Exam not found', 404)
    if status == 'published' and not load_exam_questions(conn, exam_id):
        raise ApiError('An exam needs at least one question before it can be published')

    with conn:
        conn.execute('UPDATE exams SET status = ? WHERE id = ?', (status, exam_id))
    logger.info("Exam %s status set to %s", exam_id, status)
    return jsonify({'success': True, 'message': 'Exam status updated successfully'})


@bp.route('/api/admin/exams/<exam_id>', methods=['DELETE'])
@role_required('admin')
def delete_exam(exam_id):
    conn = get_db_connection()
    if load_exam(conn, exam_id) is None:
        raise ApiError('Exam not found', 404)
    if has_attempts(conn, exam_id) and not as_bool(request.args.get('force')):
        raise ApiError('Exam has attempts; pass force=true to delete it with its results', 409)

    with conn:
        remove_questions(conn, exam_id)
        conn.execute('DELETE FROM exam_results WHERE exam_id = ?', (exam_id,))
        conn.execute('DELETE FROM exams WHERE id = ?', (exam_id,))
    logger.info("Exam %s deleted", exam_id)
    return jsonify({'success': True, 'message': 'Exam deleted successfully'})


@bp.route('/api/admin/questions')
@role_required('admin')
def list_questions():
    """Question bank with search and type filters"""
    page, limit, offset = parse_pagination(request.args)
    where, params = [], []
    search = (request.args.get('search') or '').strip()
    if search:
        where.append('q.question_text LIKE ?')
        params.append(f'%{search}%')
    question_type = request.args.get('type')
    if question_type:
        if question_type not in QUESTION_TYPES:
            raise ApiError(f'type must be one of: {", ".join(QUESTION_TYPES)}')
        where.append('q.question_type = ?')
        params.append(question_type)
    clause = f"WHERE {' AND '.join(where)}" if where else ''

    conn = get_db_connection()
    total = conn.execute(f'SELECT COUNT(*) AS count FROM questions q {clause}', params).fetchone()['count']
    questions = [dict(row) for row in conn.execute(f'''
        SELECT q.*, (SELECT COUNT(*) FROM exam_questions eq WHERE eq.question_id = q.id) AS exam_count
        FROM questions q
        {clause}
        ORDER BY q.created_at DESC, q.rowid DESC
        LIMIT ? OFFSET ?
    ''', (*params, limit, offset)).fetchall()]
    attach_options(conn, questions)

    return jsonify({
        'success': True,
        'questions': questions,
        'pagination': pagination_meta(page, limit, total),
    })


@bp.route('/api/admin/questions', methods=['POST'])
@role_required('admin')
def create_bank_question():
    data = require_json()
    conn = get_db_connection()
    with conn:
        question_id, _ = create_question(conn, data, in_bank=True)
    logger.info("Question %s added to the bank by %s", question_id, session['user_id'])
    return jsonify({'success': True, 'questionId': question_id, 'message': 'Question created successfully'}), 201


@bp.route('/api/admin/questions/<question_id>', methods=['DELETE'])
@role_required('admin')
def delete_bank_question(question_id):
    conn = get_db_connection()
    if conn.execute('SELECT 1 FROM questions WHERE id = ?', (question_id,)).fetchone() is None:
        raise ApiError('Question not found', 404)
    if conn.execute('SELECT 1 FROM exam_questions WHERE question_id = ? LIMIT 1', (question_id,)).fetchone():
        raise ApiError('Question is used by an exam', 409)
    with conn:
        conn.execute('DELETE FROM questions WHERE id = ?', (question_id,))
    logger.info("Question %s deleted", question_id)
    return jsonify({'success': True, 'message': 'Question deleted successfully'})


@bp.route('/api/admin/exams/<exam_id>/questions', methods=['POST'])
@role_required('admin')
def assign_questions(exam_id):
    """Replace an exam's questions with existing ones, in the given order"""
    data = require_json()
    question_ids = data.get('questionIds')
    if not isinstance(question_ids, list) or not question_ids:
        raise ApiError('questionIds must be a non-empty list')
    if not all(isinstance(question_id, str) for question_id in question_ids):
        raise ApiError('questionIds must be strings')
    if len(set(question_ids)) != len(question_ids):
        raise ApiError('questionIds contains duplicates')

    conn = get_db_connection()
    if load_exam(conn, exam_id) is None:
        raise ApiError('Exam not found', 404)
    if has_attempts(conn, exam_id):
        raise ApiError('Questions cannot be replaced once students have attempted the exam', 409)

    marks = {}
    for question_id in question_ids:
        row = conn.execute('SELECT marks FROM questions WHERE id = ?', (question_id,)).fetchone()
        if row is None:
            raise ApiError(f'Question not found: {question_id}', 404)
        marks[question_id] = row['marks'] or 0

    with conn:
        remove_questions(conn, exam_id, keep=set(question_ids))
        for sequence, question_id in enumerate(question_ids):
            conn.execute('''
                INSERT INTO exam_questions (exam_id, question_id, sequence) VALUES (?, ?, ?)
            ''', (exam_id, question_id, sequence))
        total_marks = sum(marks.values())
        conn.execute('UPDATE exams SET total_marks = ? WHERE id = ?', (total_marks, exam_id))

    logger.info("Exam %s assigned %d questions", exam_id, len(question_ids))
    return jsonify({
        'success': True,
        'message': 'Questions assigned successfully',
        'totalQuestions': len(question_ids),
        'totalMarks': total_marks,
    })


@bp.route('/api/admin/programs', methods=['POST'])
@role_required('admin')
def create_program():
    data = require_json()
    title = (data.get('title') or '').strip()
    if not title:
        raise ApiError('Program title is required')
    status = data.get('status') or 'published'
    if status not in PROGRAM_STATUSES:
        raise ApiError(f'Status must be one of: {", ".join(PROGRAM_STATUSES)}')
    try:
        fee = float(data.get('enrollment_fee', data.get('enrollmentFee')) or 0)
        max_students = data.get('max_students', data.get('maxStudents'))
        max_students = int(max_students) if max_students not in (None, '') else None
    except (TypeError, ValueError):
        raise ApiError('enrollment_fee and max_students must be numbers')
    if fee < 0:
        raise ApiError('Enrollment fee cannot be negative')

    program_id = new_id()
    conn = get_db_connection()
    with conn:
        conn.execute('''
            INSERT INTO programs (id, title, description, instructions, enrollment_fee, status, max_students, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
        ''', (program_id, title, data.get('description'), data.get('instructions'), fee, status,
              max_students, format_ts(utcnow())))
    return jsonify({'success': True, 'programId': program_id, 'message': 'Program created successfully'}), 201


@bp.route('/api/programs')
@login_required
def list_programs():
    conn = get_db_connection()
    student = session.get('user_type') == 'student'
    where = "WHERE p.status = 'published'" if student else ''
    rows = conn.execute(f'''
        SELECT p.*,
               (SELECT COUNT(*) FROM program_enrollments WHERE program_id = p.id AND status = 'active') AS enrolled_count,
               (SELECT COUNT(*) FROM exam_programs ep WHERE ep.program_id = p.id) AS exam_count,
               pe.status AS enrollment_status,
               pe.enrolled_at
        FROM programs p
        LEFT JOIN program_enrollments pe ON p.id = pe.program_id AND pe.user_id = ?
        {where}
        ORDER BY p.created_at DESC, p.title
    ''', (session['user_id'],)).fetchall()

    programs = []
    for row in rows:
        program = dict(row)
        program['isEnrolled'] = program['enrollment_status'] == 'active'
        program['isFull'] = bool(program['max_students']) and program['enrolled_count'] >= program['max_students']
        programs.append(program)
    return jsonify({'success': True, 'programs': programs})


def enroll_student(conn, program_id, user_id, payment_status='free', transaction_id=None):
    """Activate (or create) an enrollment; reuses a cancelled row"""
    conn.execute('''
        INSERT INTO program_enrollments (id, program_id, user_id, status, payment_status, transaction_id, enrolled_at)
        VALUES (?, ?, ?, 'active', ?, ?, ?)
        ON CONFLICT(program_id, user_id) DO UPDATE SET
            status = 'active',
            payment_status = excluded.payment_status,
            transaction_id = excluded.transaction_id,
            enrolled_at = excluded.enrolled_at
    ''', (new_id(), program_id, user_id, payment_status, transaction_id, format_ts(utcnow())))


def load_enrollable_program(conn, program_id, user_id):
    """Published program the student may still join, or an ApiError"""
    program = conn.execute(
        "SELECT * FROM programs WHERE id = ? AND status = 'published'", (program_id,)
    ).fetchone()
    if program is None:
        raise ApiError('Program not found or not available', 404)

    existing = conn.execute('''
        SELECT 1 FROM program_enrollments WHERE program_id = ? AND user_id = ? AND status = 'active'
    ''', (program_id, user_id)).fetchone()
    if existing is not None:
        raise ApiError('Already enrolled in this program')

    if program['max_students']:
        enrolled = conn.execute('''
            SELECT COUNT(*) AS count FROM program_enrollments WHERE program_id = ? AND status = 'active'
        ''', (program_id,)).fetchone()['count']
        if enrolled >= program['max_students']:
            raise ApiError('Program is full', 409)
    return program


@bp.route('/api/programs/enroll', methods=['POST'])
@role_required('student')
def enroll():
    data = require_json()
    program_id = data.get('programId')
    if not program_id:
        raise ApiError('Program ID is required')

    user_id = session['user_id']
    conn = get_db_connection()
    program = load_enrollable_program(conn, program_id, user_id)

    if (program['enrollment_fee'] or 0) > 0:
        raise ApiError(
            'Payment required for this program', 402,
            requiresPayment=True,
            amount=program['enrollment_fee'],
            currency=get_payment_settings()['currency'],
        )

    with conn:
        enroll_student(conn, program_id, user_id)
    logger.info("Student %s enrolled in program %s", user_id, program_id)
    return jsonify({'success': True, 'message': 'Successfully enrolled in the program'})


@bp.route('/api/programs/enroll', methods=['DELETE'])
@role_required('student')
def cancel_enrollment():
    program_id = request.args.get('programId')
    if not program_id:
        raise ApiError('Program ID is required')

    user_id = session['user_id']
    conn = get_db_connection()
    taken = conn.execute('''
        SELECT COUNT(*) AS count FROM exam_attempts ea
        JOIN exam_programs ep ON ea.exam_id = ep.exam_id
        WHERE ep.program_id = ? AND ea.student_id = ?
    ''', (program_id, user_id)).fetchone()['count']
    if taken:
        raise ApiError('Cannot cancel enrollment after taking exams in this program')

    with conn:
        cursor = conn.execute('''
            UPDATE program_enrollments SET status = 'cancelled'
            WHERE program_id = ? AND user_id = ? AND status = 'active'
        ''', (program_id, user_id))
    if cursor.rowcount == 0:
        raise ApiError('Enrollment not found', 404)
    return jsonify({'success': True, 'message': 'Enrollment cancelled successfully'})
