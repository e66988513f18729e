from functools import wraps

from flask import session

from .errors import ApiError


def current_user():
    """Session identity as a dict, or None when anonymous"""
    if not session.get('user_id'):
        return None
    return {
        'id': session['user_id'],
        'role': session.get('user_type'),
        'email': session.get('email'),
        'full_name': session.get('full_name'),
    }


def login_required(view):
    @wraps(view)
    def wrapper(*args, **kwargs):
        if not session.get('user_id'):
            raise ApiError('Unauthorized', 401)
        return view(*args, **kwargs)
    return wrapper


def role_required(*roles):
    """Restrict a view to the given session roles (401 anonymous, 403 otherwise)"""
    def decorator(view):
        @wraps(view)
        def wrapper(*args, **kwargs):
            if not session.get('user_id'):
                raise ApiError('Unauthorized', 401)
            if session.get('user_type') not in roles:
                raise ApiError('Access denied', 403)
            return view(*args, **kwargs)
        return wrapper
    return decorator


def is_staff():
    return session.get('user_type') in ('admin', 'proctor')
