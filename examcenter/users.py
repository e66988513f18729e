import logging

from flask import Blueprint, jsonify, request, session
from werkzeug.security import generate_password_hash

from .auth import ROLES, create_user, public_user, validate_password
from .db import get_db_connection
from .decorators import role_required
from .errors import ApiError
from .utils import is_valid_email, pagination_meta, parse_pagination, require_json

logger = logging.getLogger(__name__)

bp = Blueprint('users', __name__, url_prefix='/api/users')

USER_STATUSES = ('active', 'inactive', 'suspended')


def get_user_or_404(conn, user_id):
    user = conn.execute('SELECT * FROM users WHERE id = ?', (user_id,)).fetchone()
    if user is None:
        raise ApiError('User not found', 404)
    return user


@bp.route('', methods=['GET'])
@role_required('admin')
def list_users():
    page, limit, offset = parse_pagination(request.args)
    where, params = [], []

    search = (request.args.get('search') or '').strip()
    if search:
        where.append('(email LIKE ? OR full_name LIKE ? OR phone LIKE ?)')
        params.extend([f'%{search}%'] * 3)
    role = request.args.get('role')
    if role:
        where.append('role = ?')
        params.append(role)
    status = request.args.get('status')
    if status:
        where.append('status = ?')
        params.append(status)
    clause = f"WHERE {' AND '.join(where)}" if where else ''

    conn = get_db_connection()
    total = conn.execute(f'SELECT COUNT(*) AS count FROM users {clause}', params).fetchone()['count']
    rows = conn.execute(f'''
        SELECT * FROM users {clause}
        ORDER BY created_at DESC, email
        LIMIT ? OFFSET ?
    ''', (*params, limit, offset)).fetchall()

    return jsonify({
        'success': True,
        'users': [public_user(row) for row in rows],
        'pagination': pagination_meta(page, limit, total),
    })


@bp.route('', methods=['POST'])
@role_required('admin')
def add_user():
    data = require_json()
    status = data.get('status') or 'active'
    if status not in USER_STATUSES:
        raise ApiError(f'Status must be one of: {", ".join(USER_STATUSES)}')

    conn = get_db_connection()
    with conn:
        user_id = create_user(
            conn,
            data.get('email'),
            data.get('password', ''),
            data.get('fullName') or data.get('full_name'),
            role=data.get('role') or 'student',
            phone=data.get('phone'),
            status=status,
        )
    logger.info("User %s created by admin %s", user_id, session['user_id'])
    return jsonify({'success': True, 'userId': user_id, 'message': 'User created successfully'}), 201


@bp.route('/<user_id>', methods=['PUT'])
@role_required('admin')
def update_user(user_id):
    data = require_json()
    conn = get_db_connection()
    user = get_user_or_404(conn, user_id)

    values = {}
    if 'email' in data:
        email = (data['email'] or '').strip().lower()
        if not is_valid_email(email):
            raise ApiError('Please enter a valid email address')
        values['email'] = email
    full_name = data.get('fullName', data.get('full_name'))
    if full_name is not None:
        if not full_name.strip():
            raise ApiError('Full name cannot be empty')
        values['full_name'] = full_name.strip()
    if 'phone' in data:
        values['phone'] = data['phone']
    if 'role' in data:
        if data['role'] not in ROLES:
            raise ApiError(f'Role must be one of: {", ".join(ROLES)}')
        values['role'] = data['role']
    if 'status' in data:
        if data['status'] not in USER_STATUSES:
            raise ApiError(f'Status must be one of: {", ".join(USER_STATUSES)}')
        values['status'] = data['status']
    if data.get('password'):
        validate_password(data['password'])
        values['password_hash'] = generate_password_hash(data['password'])

    if user['id'] == session['user_id'] and (values.get('role', 'admin') != 'admin'
                                             or values.get('status', 'active') != 'active'):
        raise ApiError('You cannot demote or deactivate your own account')
    if not values:
        raise ApiError('No fields to update')

    if 'email' in values:
        taken = conn.execute('SELECT 1 FROM users WHERE email = ? AND id != ?', (values['email'], user_id)).fetchone()
        if taken is not None:
            raise ApiError('An account with this email already exists', 409)

    with conn:
        assignments = ', '.join(f'{column} = :{column}' for column in values)
        conn.execute(f'UPDATE users SET {assignments} WHERE id = :user_id', {**values, 'user_id': user_id})

    logger.info("User %s updated (%s)", user_id, ', '.join(sorted(values)))
    return jsonify({'success': True, 'user': public_user(get_user_or_404(conn, user_id))})


@bp.route('/<user_id>', methods=['DELETE'])
@role_required('admin')
def delete_user(user_id):
    if user_id == session['user_id']:
        raise ApiError('You cannot delete your own account')

    conn = get_db_connection()
    get_user_or_404(conn, user_id)
    with conn:
        conn.execute('DELETE FROM exam_results WHERE student_id = ?', (user_id,))
        conn.execute('DELETE FROM users WHERE id = ?', (user_id,))
    logger.info("User %s deleted by admin %s", user_id, session['user_id'])
    return jsonify({'success': True, 'message': 'User deleted successfully'})
