import os
import secrets


class Config:
    """Deployment configuration, overridable through EXAMCENTER_* variables"""

    SECRET_KEY = os.environ.get('EXAMCENTER_SECRET_KEY') or secrets.token_hex(16)
    DATABASE = os.environ.get('EXAMCENTER_DATABASE', os.path.join('instance', 'examcenter.db'))
    UPLOAD_FOLDER = os.environ.get('EXAMCENTER_UPLOAD_FOLDER', 'uploads')
    BACKUP_FOLDER = os.environ.get('EXAMCENTER_BACKUP_FOLDER', 'backups')
    MAX_CONTENT_LENGTH = 16 * 1024 * 1024  # 16MB max upload (backups, frames)

    # Runtime settings are read from admin_settings and cached this long
    SETTINGS_CACHE_SECONDS = int(os.environ.get('EXAMCENTER_SETTINGS_CACHE_SECONDS', '300'))

    # Answers arriving this long after the attempt deadline are still accepted
    ANSWER_GRACE_SECONDS = int(os.environ.get('EXAMCENTER_ANSWER_GRACE_SECONDS', '30'))

    LOG_LEVEL = os.environ.get('EXAMCENTER_LOG_LEVEL', 'INFO')

    DEFAULT_ADMIN_EMAIL = os.environ.get('EXAMCENTER_ADMIN_EMAIL', 'admin@examcenter.local')
    DEFAULT_ADMIN_PASSWORD = os.environ.get('EXAMCENTER_ADMIN_PASSWORD', 'admin123')

    # Create tables and the default admin when the app is built
    INIT_DB = os.environ.get('EXAMCENTER_INIT_DB', '1') == '1'
