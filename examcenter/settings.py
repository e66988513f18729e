import json
import logging
import time

from flask import Blueprint, current_app, jsonify, request

from .decorators import role_required
from .db import format_ts, get_db_connection, utcnow
from .errors import ApiError

logger = logging.getLogger(__name__)

bp = Blueprint('settings', __name__)

CACHE_KEY = 'examcenter.settings_cache'

# Defaults applied when a key has never been saved
DEFAULTS = {
    'general.siteName': 'Exam Center',
    'general.siteTagline': 'Your assessment platform',
    'general.siteEmail': 'support@example.com',
    'general.organizationName': 'Exam Center',
    'general.sessionTimeout': 30,
    'userManagement.allowSelfRegistration': True,
    'userManagement.minPasswordLength': 8,
    'userManagement.maxLoginAttempts': 5,
    'userManagement.lockoutDuration': 30,
    'examSettings.shuffleQuestions': True,
    'examSettings.showResultsImmediately': False,
    'examSettings.allowReviewAfterSubmission': True,
    'userPermissions.maxExamAttemptsPerStudent': 3,
    'userPermissions.allowExamRetake': True,
    'userPermissions.retakeCooldownDays': 7,
    'antiCheat.proctoringEnabled': True,
    'antiCheat.faceDetectionEnabled': True,
    'antiCheat.tabSwitchDetection': True,
    'antiCheat.copyPasteDisabled': True,
    'antiCheat.autoSubmitOnViolation': False,
    'antiCheat.maxViolations': 5,
    'payments.allowManualPayments': True,
    'payments.autoApprovePayments': False,
    'payments.paymentCurrency': 'USD',
}

PUBLIC_PREFIXES = ('general.',)


def _cache():
    return current_app.extensions.setdefault(CACHE_KEY, {'values': {}, 'expires': 0.0})


def clear_settings_cache():
    cache = _cache()
    cache['values'] = {}
    cache['expires'] = 0.0


def load_settings():
    """Stored settings merged over DEFAULTS, cached per application"""
    cache = _cache()
    if cache['values'] and time.monotonic() < cache['expires']:
        return cache['values']

    settings = dict(DEFAULTS)
    conn = get_db_connection()
    for row in conn.execute('SELECT setting_key, setting_value FROM admin_settings').fetchall():
        try:
            settings[row['setting_key']] = json.loads(row['setting_value'])
        except (TypeError, ValueError):
            settings[row['setting_key']] = row['setting_value']

    cache['values'] = settings
    cache['expires'] = time.monotonic() + current_app.config['SETTINGS_CACHE_SECONDS']
    return settings


def get_setting(key, default=None):
    return load_settings().get(key, default)


def _to_bool(value):
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)) and value in (0, 1):
        return bool(value)
    text = str(value).strip().lower()
    if text in ('1', 'true', 'yes', 'on'):
        return True
    if text in ('0', 'false', 'no', 'off'):
        return False
    raise ValueError(f'not a boolean: {value!r}')


def _to_count(value):
    if isinstance(value, bool):
        raise ValueError(f'not a number: {value!r}')
    if isinstance(value, float):
        if not value.is_integer():
            raise ValueError(f'not a whole number: {value!r}')
        value = int(value)
    number = int(value)
    if number < 0:
        raise ValueError(f'negative: {value!r}')
    return number


def coerce_setting(key, value):
    """Convert value to the type of the key's default; unknown keys pass through.

    Raises ValueError (or TypeError) when the value does not fit.
    """
    if key not in DEFAULTS:
        return value
    default = DEFAULTS[key]
    if isinstance(default, bool):
        return _to_bool(value)
    if isinstance(default, int):
        return _to_count(value)
    if isinstance(value, (dict, list)):
        raise ValueError(f'not text: {value!r}')
    return str(value)


def typed_setting(settings, key):
    """Stored value converted to the default's type, or the default when it won't convert"""
    try:
        return coerce_setting(key, settings.get(key, DEFAULTS[key]))
    except (TypeError, ValueError):
        logger.warning("Ignoring invalid stored setting %s=%r", key, settings.get(key))
        return DEFAULTS[key]


def save_settings(values):
    conn = get_db_connection()
    now = format_ts(utcnow())
    with conn:
        for key, value in values.items():
            conn.execute('''
                INSERT INTO admin_settings (setting_key, setting_value, updated_at)
                VALUES (?, ?, ?)
                ON CONFLICT(setting_key) DO UPDATE SET setting_value = excluded.setting_value,
                                                       updated_at = excluded.updated_at
            ''', (key, json.dumps(value), now))
    clear_settings_cache()


def flatten(values, prefix=''):
    """Accept {"a.b": 1} or {"a": {"b": 1}} and return {"a.b": 1}"""
    flat = {}
    for key, value in values.items():
        full_key = f'{prefix}{key}'
        if isinstance(value, dict):
            flat.update(flatten(value, f'{full_key}.'))
        else:
            flat[full_key] = value
    return flat


def get_exam_settings():
    s = load_settings()
    return {
        'shuffleQuestions': typed_setting(s, 'examSettings.shuffleQuestions'),
        'showResultsImmediately': typed_setting(s, 'examSettings.showResultsImmediately'),
        'allowReviewAfterSubmission': typed_setting(s, 'examSettings.allowReviewAfterSubmission'),
        'maxExamAttemptsPerStudent': typed_setting(s, 'userPermissions.maxExamAttemptsPerStudent'),
        'allowExamRetake': typed_setting(s, 'userPermissions.allowExamRetake'),
        'retakeCooldownDays': typed_setting(s, 'userPermissions.retakeCooldownDays'),
    }


def get_proctoring_settings():
    s = load_settings()
    return {
        'proctoringEnabled': typed_setting(s, 'antiCheat.proctoringEnabled'),
        'faceDetectionEnabled': typed_setting(s, 'antiCheat.faceDetectionEnabled'),
        'tabSwitchDetection': typed_setting(s, 'antiCheat.tabSwitchDetection'),
        'copyPasteDisabled': typed_setting(s, 'antiCheat.copyPasteDisabled'),
        'autoSubmitOnViolation': typed_setting(s, 'antiCheat.autoSubmitOnViolation'),
        'maxViolations': typed_setting(s, 'antiCheat.maxViolations'),
    }


def get_payment_settings():
    s = load_settings()
    return {
        'allowManualPayments': typed_setting(s, 'payments.allowManualPayments'),
        'autoApprovePayments': typed_setting(s, 'payments.autoApprovePayments'),
        'currency': typed_setting(s, 'payments.paymentCurrency'),
    }


def get_login_limits():
    s = load_settings()
    return {
        'maxLoginAttempts': typed_setting(s, 'userManagement.maxLoginAttempts'),
        'lockoutDuration': typed_setting(s, 'userManagement.lockoutDuration'),
    }


def get_password_policy():
    return {'minLength': typed_setting(load_settings(), 'userManagement.minPasswordLength')}


@bp.route('/api/admin/settings', methods=['GET'])
@role_required('admin')
def admin_get_settings():
    return jsonify({'success': True, 'settings': load_settings()})


@bp.route('/api/admin/settings', methods=['PUT', 'POST'])
@role_required('admin')
def admin_update_settings():
    data = request.get_json(silent=True)
    if not isinstance(data, dict) or not data:
        raise ApiError('Settings payload must be a non-empty object')

    raw = data.get('settings', data)
    if not isinstance(raw, dict):
        raise ApiError('settings must be an object')

    values, invalid = {}, []
    for key, value in flatten(raw).items():
        try:
            values[key] = coerce_setting(key, value)
        except (TypeError, ValueError):
            invalid.append(key)
    if invalid:
        raise ApiError(f"Invalid value for: {', '.join(sorted(invalid))}", 400, invalid=sorted(invalid))

    save_settings(values)
    logger.info("Admin settings updated: %s", ', '.join(sorted(values)))
    return jsonify({'success': True, 'message': 'Settings saved', 'settings': load_settings()})


@bp.route('/api/public/settings')
def public_settings():
    settings = {
        key: value for key, value in load_settings().items()
        if key.startswith(PUBLIC_PREFIXES)
    }
    return jsonify({'success': True, 'settings': settings})
