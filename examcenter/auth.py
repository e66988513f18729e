import logging
import sqlite3
from datetime import timedelta

from flask import Blueprint, jsonify, request, session
from werkzeug.security import check_password_hash, generate_password_hash

from .db import format_ts, get_db_connection, new_id, utcnow
from .decorators import login_required
from .errors import ApiError
from .settings import get_login_limits, get_password_policy, load_settings, typed_setting
from .utils import is_valid_email, require_json

logger = logging.getLogger(__name__)

bp = Blueprint('auth', __name__, url_prefix='/api/auth')

ROLES = ('admin', 'proctor', 'student')


def client_ip():
    forwarded = request.headers.get('X-Forwarded-For', '')
    if forwarded:
        return forwarded.split(',')[0].strip()
    return request.headers.get('X-Real-IP') or request.remote_addr or 'unknown'


def public_user(row):
    return {
        'id': row['id'],
        'email': row['email'],
        'full_name': row['full_name'],
        'phone': row['phone'],
        'role': row['role'],
        'status': row['status'],
        'created_at': row['created_at'],
        'last_login_at': row['last_login_at'],
    }


def validate_password(password):
    policy = get_password_policy()
    if len(password or '') < policy['minLength']:
        raise ApiError(f"Password must be at least {policy['minLength']} characters long")


def create_user(conn, email, password, full_name, role='student', phone=None, status='active'):
    """Insert a user after validating the fields; returns the new id"""
    email = (email or '').strip().lower()
    full_name = (full_name or '').strip()
    errors = []
    if not all([email, full_name, password]):
        errors.append('All required fields must be filled out')
    if email and not is_valid_email(email):
        errors.append('Please enter a valid email address')
    if role not in ROLES:
        errors.append(f'Role must be one of: {", ".join(ROLES)}')
    if errors:
        raise ApiError(errors[0], 400, errors=errors)
    validate_password(password)

    user_id = new_id()
    try:
        conn.execute('''
            INSERT INTO users (id, email, password_hash, full_name, phone, role, status)
            VALUES (?, ?, ?, ?, ?, ?, ?)
        ''', (user_id, email, generate_password_hash(password), full_name, phone, role, status))
    except sqlite3.IntegrityError:
        raise ApiError('An account with this email already exists', 409)
    return user_id


def _recent_failures(conn, email, minutes):
    """Failures inside the lockout window that came after the last success"""
    since = format_ts(utcnow() - timedelta(minutes=minutes))
    last_success = conn.execute('''
        SELECT MAX(id) AS id FROM login_attempts WHERE email = ? AND success = 1
    ''', (email,)).fetchone()['id']
    return conn.execute('''
        SELECT COUNT(*) AS count FROM login_attempts
        WHERE email = ? AND success = 0 AND attempted_at >= ? AND id > ?
    ''', (email, since, last_success or 0)).fetchone()['count']


def _record_attempt(conn, email, success):
    conn.execute('''
        INSERT INTO login_attempts (email, success, ip_address, attempted_at) VALUES (?, ?, ?, ?)
    ''', (email, 1 if success else 0, client_ip(), format_ts(utcnow())))


@bp.route('/register', methods=['POST'])
def register():
    """Student self-registration"""
    if not typed_setting(load_settings(), 'userManagement.allowSelfRegistration'):
        raise ApiError('Self-registration is currently disabled', 403)

    data = require_json()
    conn = get_db_connection()
    with conn:
        user_id = create_user(
            conn,
            data.get('email'),
            data.get('password', ''),
            data.get('fullName') or data.get('full_name'),
            role='student',
            phone=data.get('phone'),
        )
    logger.info("Student registered: %s", user_id)
    return jsonify({'success': True, 'userId': user_id, 'message': 'Registration successful'}), 201


@bp.route('/login', methods=['POST'])
def login():
    data = require_json()
    email = (data.get('email') or '').strip().lower()
    password = data.get('password') or ''
    if not email or not password:
        raise ApiError('Please enter both email and password')

    limits = get_login_limits()
    conn = get_db_connection()
    if _recent_failures(conn, email, limits['lockoutDuration']) >= limits['maxLoginAttempts']:
        logger.warning("Login locked out for %s", email)
        raise ApiError(
            f"Too many failed attempts. Try again in {limits['lockoutDuration']} minutes.", 429
        )

    user = conn.execute('SELECT * FROM users WHERE email = ?', (email,)).fetchone()
    if not user or not check_password_hash(user['password_hash'], password):
        # the failure must be committed before the error unwinds
        with conn:
            _record_attempt(conn, email, False)
        raise ApiError('Invalid email or password', 401)

    if user['status'] != 'active':
        raise ApiError(f"Your account is {user['status']}. Please contact support.", 403)

    with conn:
        _record_attempt(conn, email, True)
        conn.execute('UPDATE users SET last_login_at = ? WHERE id = ?', (format_ts(utcnow()), user['id']))

    session.clear()
    session['user_type'] = user['role']
    session['user_id'] = user['id']
    session['email'] = user['email']
    session['full_name'] = user['full_name']
    logger.info("User %s logged in as %s", user['id'], user['role'])
    return jsonify({'success': True, 'user': public_user(user)})


@bp.route('/logout', methods=['POST'])
def logout():
    session.clear()
    return jsonify({'success': True, 'message': 'You have been logged out successfully'})


@bp.route('/me')
@login_required
def me():
    conn = get_db_connection()
    user = conn.execute('SELECT * FROM users WHERE id = ?', (session['user_id'],)).fetchone()
    if not user:
        session.clear()
        raise ApiError('Unauthorized', 401)
    return jsonify({'success': True, 'user': public_user(user)})
