import re

from flask import request

from .errors import ApiError

EMAIL_PATTERN = re.compile(r'^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$')

MAX_PAGE_SIZE = 100


def is_valid_email(email):
    return bool(email) and EMAIL_PATTERN.match(email) is not None


def as_bool(value, default=False):
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0
    return str(value).strip().lower() in ('1', 'true', 'yes', 'on')


def parse_count(value, field, default=0):
    """Non-negative whole number from a request value; None means default"""
    if value is None or value == '':
        return default
    if isinstance(value, bool):
        raise ApiError(f'{field} must be a number')
    try:
        number = int(float(value))
    except (TypeError, ValueError, OverflowError):
        raise ApiError(f'{field} must be a number')
    return max(0, number)


def parse_pagination(args, default_limit=20):
    """Return (page, limit, offset) from query args, clamped to sane bounds"""
    try:
        page = max(1, int(args.get('page', 1)))
        limit = min(MAX_PAGE_SIZE, max(1, int(args.get('limit', default_limit))))
    except (TypeError, ValueError):
        raise ApiError('page and limit must be integers')
    return page, limit, (page - 1) * limit


def pagination_meta(page, limit, total):
    pages = (total + limit - 1) // limit if total else 0
    return {
        'page': page,
        'limit': limit,
        'total': total,
        'totalPages': pages,
        'hasNext': page < pages,
        'hasPrev': page > 1,
    }


def require_json():
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise ApiError('Invalid request data. Please try again.')
    return data
