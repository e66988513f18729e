"""
Server-side proctoring: webcam frame analysis, the live attempt monitor and
the expiry sweep for attempts left running past their deadline.
"""
import base64
import binascii
import logging

import click
import cv2
import numpy as np
from flask import Blueprint, current_app, jsonify
from flask.cli import with_appcontext

from .attempts import get_own_attempt
from .db import get_db_connection, iso, utcnow
from .decorators import role_required
from .errors import ApiError
from .lifecycle import VIOLATION_SEVERITIES, attempt_deadline, expire_overdue_attempts, record_event
from .settings import get_proctoring_settings
from .utils import require_json

logger = logging.getLogger(__name__)

bp = Blueprint('proctoring', __name__)

FACE_CASCADE = 'haarcascade_frontalface_default.xml'


def decode_frame(frame_data):
    """Decode a base64 (optionally data-URL) image into a BGR array"""
    if not isinstance(frame_data, str) or not frame_data:
        raise ApiError('Frame data is required')
    if ',' in frame_data:
        frame_data = frame_data.split(',', 1)[1]
    try:
        image_data = base64.b64decode(frame_data, validate=True)
    except (binascii.Error, ValueError):
        raise ApiError('Invalid frame data')
    if not image_data:
        raise ApiError('Invalid frame data')

    nparr = np.frombuffer(image_data, np.uint8)
    frame = cv2.imdecode(nparr, cv2.IMREAD_COLOR)
    if frame is None:
        raise ApiError('Invalid frame data')
    return frame


def _face_cascade():
    cascade = current_app.extensions.get('examcenter.face_cascade')
    if cascade is None:
        cascade = cv2.CascadeClassifier(cv2.data.haarcascades + FACE_CASCADE)
        current_app.extensions['examcenter.face_cascade'] = cascade
    return cascade


def analyze_faces(frame):
    """Count faces with the Haar cascade; also report frame brightness"""
    gray = cv2.cvtColor(frame, cv2.COLOR_BGR2GRAY)
    faces = _face_cascade().detectMultiScale(gray, 1.1, 4)

    results = {
        'faces_detected': len(faces),
        'face_confidence': 0.0,
        'brightness_level': float(np.mean(gray)),
    }
    if len(faces) > 0:
        x, y, w, h = max(faces, key=lambda f: f[2] * f[3])
        frame_area = frame.shape[0] * frame.shape[1]
        results['face_confidence'] = float(min(0.9, (w * h / frame_area) * 10))
    return results


@bp.route('/api/exam-attempts/analyze-frame', methods=['POST'])
@role_required('student')
def analyze_frame():
    data = require_json()
    conn = get_db_connection()
    attempt = get_own_attempt(conn, data.get('attemptId'))
    if attempt['status'] != 'ongoing':
        raise ApiError('Exam already submitted', 400, status=attempt['status'])

    frame = decode_frame(data.get('frame'))

    if not get_proctoring_settings()['faceDetectionEnabled']:
        return jsonify({'success': True, 'analysis': None, 'violations': [], 'message': 'Face detection disabled'})

    analysis = analyze_faces(frame)
    count = analysis['faces_detected']

    violations = []
    if count == 0:
        violations.append(('no_face', 'high', 'No face detected in frame'))
    elif count > 1:
        violations.append(('multiple_faces', 'critical', f'Multiple faces detected: {count}'))

    body = {'success': True, 'analysis': analysis, 'violations': []}
    for event_type, severity, message in violations:
        with conn:
            event_id, total, result = record_event(
                conn, attempt, event_type, severity, message, {'faceCount': count},
            )
        body['violations'].append({'type': event_type, 'severity': severity, 'message': message, 'eventId': event_id})
        body['violationCount'] = total
        if result is not None:
            body.update({'autoSubmitted': True, 'resultId': result['id']})

    return jsonify(body)


@bp.route('/api/proctor/live-attempts')
@role_required('admin', 'proctor')
def live_attempts():
    """Ongoing attempts with time left and violation counts"""
    conn = get_db_connection()
    placeholders = ','.join('?' for _ in VIOLATION_SEVERITIES)
    rows = conn.execute(f'''
        SELECT ea.*, u.full_name AS student_name, u.email AS student_email, e.title AS exam_title,
               (SELECT COUNT(*) FROM anti_cheat_events ace WHERE ace.attempt_id = ea.id) AS event_count,
               (SELECT COUNT(*) FROM anti_cheat_events ace
                WHERE ace.attempt_id = ea.id AND ace.severity IN ({placeholders})) AS violation_count,
               (SELECT MAX(created_at) FROM anti_cheat_events ace WHERE ace.attempt_id = ea.id) AS last_event_at
        FROM exam_attempts ea
        JOIN users u ON ea.student_id = u.id
        JOIN exams e ON ea.exam_id = e.id
        WHERE ea.status = 'ongoing'
        ORDER BY ea.start_time
    ''', VIOLATION_SEVERITIES).fetchall()

    now = utcnow()
    attempts = []
    for row in rows:
        remaining = int((attempt_deadline(row) - now).total_seconds())
        attempts.append({
            'attemptId': row['id'],
            'examId': row['exam_id'],
            'examTitle': row['exam_title'],
            'studentId': row['student_id'],
            'studentName': row['student_name'],
            'studentEmail': row['student_email'],
            'startTime': iso(row['start_time']),
            'remainingSeconds': max(0, remaining),
            'overdue': remaining < 0,
            'eventCount': row['event_count'],
            'violationCount': row['violation_count'],
            'lastEventAt': iso(row['last_event_at']),
            'ipAddress': row['ip_address'],
        })
    return jsonify({'success': True, 'attempts': attempts, 'count': len(attempts)})


@click.command('expire-attempts')
@with_appcontext
def expire_attempts_command():
    """Auto-submit ongoing attempts whose time has run out"""
    conn = get_db_connection()
    with conn:
        expired = expire_overdue_attempts(conn)
    click.echo(f'Expired {len(expired)} attempt(s)')


def init_app(app):
    app.cli.add_command(expire_attempts_command)
