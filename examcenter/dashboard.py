import logging
from datetime import timedelta

from flask import Blueprint, jsonify, request

from .db import format_ts, get_db_connection, iso, utcnow
from .decorators import role_required
from .errors import ApiError

logger = logging.getLogger(__name__)

bp = Blueprint('dashboard', __name__, url_prefix='/api/admin')


def scalar(conn, query, params=()):
    return conn.execute(query, params).fetchone()[0] or 0


@bp.route('/dashboard')
@role_required('admin')
def dashboard():
    """Headline numbers for the admin landing page"""
    conn = get_db_connection()

    users_by_role = {role: 0 for role in ('admin', 'proctor', 'student')}
    for row in conn.execute('SELECT role, COUNT(*) AS count FROM users GROUP BY role').fetchall():
        users_by_role[row['role']] = row['count']

    results = conn.execute('''
        SELECT COUNT(*) AS total, AVG(percentage) AS average,
               SUM(CASE WHEN status = 'pass' THEN 1 ELSE 0 END) AS passed
        FROM exam_results
    ''').fetchone()
    total_results = results['total'] or 0

    recent = conn.execute('''
        SELECT er.id, er.percentage, er.grade, er.status, er.result_date,
               e.title AS exam_title, u.full_name AS student_name
        FROM exam_results er
        JOIN exams e ON er.exam_id = e.id
        JOIN users u ON er.student_id = u.id
        ORDER BY er.result_date DESC
        LIMIT 10
    ''').fetchall()

    stats = {
        'totalUsers': sum(users_by_role.values()),
        'usersByRole': users_by_role,
        'totalExams': scalar(conn, 'SELECT COUNT(*) FROM exams'),
        'publishedExams': scalar(conn, "SELECT COUNT(*) FROM exams WHERE status = 'published'"),
        'totalPrograms': scalar(conn, 'SELECT COUNT(*) FROM programs'),
        'activeEnrollments': scalar(conn, "SELECT COUNT(*) FROM program_enrollments WHERE status = 'active'"),
        'totalAttempts': scalar(conn, 'SELECT COUNT(*) FROM exam_attempts'),
        'ongoingAttempts': scalar(conn, "SELECT COUNT(*) FROM exam_attempts WHERE status = 'ongoing'"),
        'totalQuestions': scalar(conn, 'SELECT COUNT(*) FROM questions'),
        'totalRevenue': round(scalar(
            conn, "SELECT SUM(final_amount) FROM transactions WHERE payment_status = 'approved'"
        ), 2),
        'pendingPayments': scalar(conn, "SELECT COUNT(*) FROM transactions WHERE payment_status = 'pending'"),
        'averagePercentage': round(results['average'] or 0, 2),
        'passRate': round((results['passed'] or 0) / total_results * 100, 2) if total_results else 0,
    }
    logger.debug("Dashboard: %d users, %d results", stats['totalUsers'], total_results)

    return jsonify({
        'success': True,
        'stats': stats,
        'recentResults': [
            {**dict(row), 'result_date': iso(row['result_date'])} for row in recent
        ],
    })


@bp.route('/analytics')
@role_required('admin')
def analytics():
    try:
        days = int(request.args.get('days', 30))
    except ValueError:
        logger.warning("Analytics requested with bad days=%r", request.args.get('days'))
        raise ApiError('days must be an integer')
    days = min(max(days, 1), 365)
    since = format_ts(utcnow() - timedelta(days=days))
    conn = get_db_connection()

    exams = [dict(row) for row in conn.execute('''
        SELECT e.id, e.title,
               COUNT(er.id) AS attempts,
               ROUND(COALESCE(AVG(er.percentage), 0), 2) AS average_percentage,
               ROUND(COALESCE(100.0 * SUM(CASE WHEN er.status = 'pass' THEN 1 ELSE 0 END) / NULLIF(COUNT(er.id), 0), 0), 2)
                   AS pass_rate
        FROM exams e
        LEFT JOIN exam_results er ON er.exam_id = e.id AND er.result_date >= ?
        GROUP BY e.id, e.title
        ORDER BY attempts DESC, e.title
    ''', (since,)).fetchall()]

    daily = [dict(row) for row in conn.execute('''
        SELECT DATE(result_date) AS day, COUNT(*) AS submissions,
               ROUND(AVG(percentage), 2) AS average_percentage
        FROM exam_results
        WHERE result_date >= ?
        GROUP BY DATE(result_date)
        ORDER BY day
    ''', (since,)).fetchall()]

    events = {row['event_type']: row['count'] for row in conn.execute('''
        SELECT event_type, COUNT(*) AS count FROM anti_cheat_events
        WHERE created_at >= ?
        GROUP BY event_type
        ORDER BY count DESC
    ''', (since,)).fetchall()}
    logger.debug("Analytics over %d days: %d exams, %d event types", days, len(exams), len(events))

    return jsonify({
        'success': True,
        'days': days,
        'examPerformance': exams,
        'dailySubmissions': daily,
        'antiCheatEvents': events,
    })
