import io
import logging

from flask import Blueprint, jsonify, request, send_file, session
from reportlab.lib.pagesizes import letter as letter_size
from reportlab.pdfgen import canvas

from .db import get_db_connection, iso
from .decorators import is_staff, login_required, role_required
from .errors import ApiError
from .grading import answer_value
from .lifecycle import effective_options, load_exam_questions
from .settings import get_exam_settings, get_setting
from .utils import pagination_meta, parse_pagination

logger = logging.getLogger(__name__)

bp = Blueprint('results', __name__)


def format_duration(seconds):
    minutes = (seconds or 0) // 60
    hours, minutes = divmod(minutes, 60)
    return f'{hours}h {minutes}m' if hours else f'{minutes}m'


def load_result(conn, result_id):
    """Result joined with its exam and student; enforces visibility rules"""
    row = conn.execute('''
        SELECT er.*, e.title AS exam_title, e.passing_percentage, e.duration_minutes,
               e.allow_answer_review,
               u.full_name AS student_name, u.email AS student_email,
               ea.start_time, ea.end_time, ea.status AS attempt_status
        FROM exam_results er
        JOIN exams e ON er.exam_id = e.id
        JOIN users u ON er.student_id = u.id
        JOIN exam_attempts ea ON er.attempt_id = ea.id
        WHERE er.id = ?
    ''', (result_id,)).fetchone()
    if row is None:
        raise ApiError('Result not found', 404)

    if not is_staff():
        if row['student_id'] != session['user_id']:
            raise ApiError('Result not found', 404)
        if not row['is_published'] and not get_exam_settings()['showResultsImmediately']:
            raise ApiError('Result has not been published yet', 403, pending=True)
    return row


def result_summary(row):
    answered = (row['correct_answers'] or 0) + (row['incorrect_answers'] or 0)
    return {
        'id': row['id'],
        'attemptId': row['attempt_id'],
        'examId': row['exam_id'],
        'examTitle': row['exam_title'],
        'studentName': row['student_name'],
        'status': row['status'],
        'attemptStatus': row['attempt_status'],
        'grade': row['grade'],
        'scoreObtained': row['obtained_marks'] or 0,
        'totalScore': row['total_marks'],
        'percentage': row['percentage'] or 0,
        'passingPercentage': row['passing_percentage'],
        'correctAnswers': row['correct_answers'] or 0,
        'wrongAnswers': row['incorrect_answers'] or 0,
        'unanswered': row['unanswered'] or 0,
        'totalQuestions': answered + (row['unanswered'] or 0),
        'negativeMarkingApplied': row['negative_marking_applied'] or 0,
        'timeSpent': format_duration(row['time_spent']),
        'timeSpentSeconds': row['time_spent'] or 0,
        'durationMinutes': row['duration_minutes'],
        'attemptNumber': row['attempt_number'] or 1,
        'startedAt': iso(row['start_time']),
        'completedAt': iso(row['end_time'] or row['result_date']),
        'isPublished': bool(row['is_published']),
    }


def question_review(conn, row):
    """Per-question breakdown in the order the student saw the options"""
    answers = {a['question_id']: a for a in conn.execute(
        'SELECT * FROM exam_answers WHERE attempt_id = ?', (row['attempt_id'],)
    ).fetchall()}
    shuffle_enabled = get_exam_settings()['shuffleQuestions']

    review = []
    for number, question in enumerate(load_exam_questions(conn, row['exam_id']), start=1):
        options = effective_options(question, row['student_id'], row['attempt_id'], shuffle_enabled)
        stored = answers.get(question['id'])
        given = None
        if stored is not None:
            given = answer_value({'answerText': stored['answer_text'], 'selectedOption': stored['selected_option']})

        review.append({
            'questionId': question['id'],
            'questionNumber': number,
            'questionText': question['question_text'],
            'questionType': question['question_type'],
            'marks': question['marks'],
            'options': [
                {'id': o['id'], 'text': o['option_text'], 'label': o['option_label'], 'isCorrect': o['is_correct']}
                for o in options
            ],
            'studentAnswer': given,
            'correctAnswer': next((o['id'] for o in options if o['is_correct']), question['correct_answer']),
            'isCorrect': bool(stored['is_correct']) if stored is not None else False,
            'marksObtained': stored['marks_obtained'] if stored is not None else 0,
            'isFlagged': bool(stored['is_flagged']) if stored is not None else False,
            'explanation': question['explanation'],
        })
    return review


@bp.route('/api/student/results')
@role_required('student')
def list_my_results():
    page, limit, offset = parse_pagination(request.args)
    conn = get_db_connection()
    show_unpublished = get_exam_settings()['showResultsImmediately']

    where = 'er.student_id = ?'
    if not show_unpublished:
        where += ' AND er.is_published = 1'
    total = conn.execute(
        f'SELECT COUNT(*) AS count FROM exam_results er WHERE {where}', (session['user_id'],)
    ).fetchone()['count']
    rows = conn.execute(f'''
        SELECT er.*, e.title AS exam_title
        FROM exam_results er JOIN exams e ON er.exam_id = e.id
        WHERE {where}
        ORDER BY er.result_date DESC
        LIMIT ? OFFSET ?
    ''', (session['user_id'], limit, offset)).fetchall()

    results = [{
        'id': r['id'],
        'examId': r['exam_id'],
        'examTitle': r['exam_title'],
        'percentage': r['percentage'],
        'grade': r['grade'],
        'status': r['status'],
        'attemptNumber': r['attempt_number'],
        'resultDate': iso(r['result_date']),
    } for r in rows]

    pending = conn.execute('''
        SELECT COUNT(*) AS count FROM exam_results WHERE student_id = ? AND is_published = 0
    ''', (session['user_id'],)).fetchone()['count']

    return jsonify({
        'success': True,
        'results': results,
        'pendingResults': 0 if show_unpublished else pending,
        'pagination': pagination_meta(page, limit, total),
    })


@bp.route('/api/student/results/<result_id>')
@login_required
def get_result(result_id):
    conn = get_db_connection()
    row = load_result(conn, result_id)
    result = result_summary(row)
    # students need both the global switch and the exam's own flag
    reviewable = get_exam_settings()['allowReviewAfterSubmission'] and bool(row['allow_answer_review'])
    if is_staff() or reviewable:
        result['questionReview'] = question_review(conn, row)
    else:
        result['questionReview'] = []
    return jsonify({'success': True, 'result': result})


def render_report(result, violation_count):
    """Report card as PDF bytes"""
    buffer = io.BytesIO()
    c = canvas.Canvas(buffer, pagesize=letter_size)
    width, height = letter_size

    c.setFont("Helvetica-Bold", 24)
    c.drawString(50, height - 50, get_setting('general.organizationName', 'Exam Center'))
    c.drawString(50, height - 80, "Exam Result Report")

    c.setFont("Helvetica", 14)
    y_position = height - 120
    report_data = [
        f"Student Name: {result['studentName']}",
        f"Exam: {result['examTitle']}",
        f"Attempt: {result['attemptNumber']}",
        f"Score: {result['scoreObtained']:.2f} / {result['totalScore']:.2f}",
        f"Percentage: {result['percentage']:.2f}%",
        f"Grade: {result['grade']}",
        f"Correct Answers: {result['correctAnswers']}/{result['totalQuestions']}",
        f"Wrong Answers: {result['wrongAnswers']}",
        f"Unanswered: {result['unanswered']}",
        f"Time Taken: {result['timeSpent']}",
        f"Violations Detected: {violation_count}",
        f"Submission Date: {result['completedAt']}",
        f"Status: {'PASSED' if result['status'] == 'pass' else 'FAILED'}",
    ]
    for line in report_data:
        c.drawString(50, y_position, line)
        y_position -= 25

    c.showPage()
    c.save()
    return buffer.getvalue()


@bp.route('/api/student/results/<result_id>/report')
@login_required
def download_report(result_id):
    conn = get_db_connection()
    row = load_result(conn, result_id)
    violations = conn.execute('''
        SELECT COUNT(*) AS count FROM anti_cheat_events
        WHERE attempt_id = ? AND severity IN ('high', 'critical')
    ''', (row['attempt_id'],)).fetchone()['count']

    pdf = render_report(result_summary(row), violations)
    return send_file(
        io.BytesIO(pdf),
        mimetype='application/pdf',
        as_attachment=True,
        download_name=f"result_{row['id']}.pdf",
    )


@bp.route('/api/admin/results/<result_id>/publish', methods=['POST'])
@role_required('admin')
def publish_result(result_id):
    conn = get_db_connection()
    with conn:
        cursor = conn.execute('UPDATE exam_results SET is_published = 1 WHERE id = ?', (result_id,))
    if cursor.rowcount == 0:
        raise ApiError('Result not found', 404)
    logger.info("Result %s published", result_id)
    return jsonify({'success': True, 'message': 'Result published'})


@bp.route('/api/admin/exams/<exam_id>/results/publish', methods=['POST'])
@role_required('admin')
def publish_exam_results(exam_id):
    conn = get_db_connection()
    with conn:
        cursor = conn.execute(
            'UPDATE exam_results SET is_published = 1 WHERE exam_id = ? AND is_published = 0', (exam_id,)
        )
    logger.info("Published %d result(s) for exam %s", cursor.rowcount, exam_id)
    return jsonify({'success': True, 'published': cursor.rowcount})
