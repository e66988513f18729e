"""
Database backups as zip archives.

Each archive holds ``metadata.json`` (version, type, timestamp, row counts)
and ``database.json`` (``{"tables": {name: [row, ...]}}``). Restore only
writes tables and columns that exist in the current schema.
"""
import io
import json
import logging
import os
import sqlite3
import zipfile
from datetime import datetime, timezone

from flask import Blueprint, current_app, jsonify, request, send_from_directory, session
from werkzeug.utils import secure_filename

from .db import get_db_connection, iso, table_columns, table_names
from .decorators import role_required
from .errors import ApiError
from .settings import clear_settings_cache
from .utils import as_bool

logger = logging.getLogger(__name__)

bp = Blueprint('backup', __name__, url_prefix='/api/admin/backup')

BACKUP_VERSION = '1.0'
BACKUP_TYPES = ('full', 'questions')

# Parents before children; restore inserts in this order and clears in reverse
TABLE_ORDER = [
    'users', 'login_attempts', 'admin_settings', 'programs', 'program_enrollments',
    'questions', 'question_options', 'exams', 'exam_programs', 'exam_questions',
    'exam_registrations', 'exam_attempts', 'exam_progress', 'exam_answers', 'exam_results',
    'anti_cheat_events', 'coupons', 'transactions',
]
QUESTION_TABLES = ['questions', 'question_options', 'exam_questions']


def backup_folder():
    folder = current_app.config['BACKUP_FOLDER']
    os.makedirs(folder, exist_ok=True)
    return folder


def backup_path(filename):
    """Resolve a backup name to a path inside the backup folder, or 404"""
    safe_name = secure_filename(filename or '')
    if not safe_name or safe_name != filename or not safe_name.endswith('.zip'):
        raise ApiError('Invalid backup file name')
    path = os.path.join(backup_folder(), safe_name)
    if not os.path.isfile(path):
        raise ApiError('Backup not found', 404)
    return path


def dump_tables(conn, tables):
    existing = set(table_names(conn))
    return {
        table: [dict(row) for row in conn.execute(f'SELECT * FROM "{table}"').fetchall()]
        for table in tables if table in existing
    }


def create_backup(conn, backup_type='full'):
    """Write a backup archive; returns its file name and metadata"""
    if backup_type not in BACKUP_TYPES:
        raise ApiError(f'backupType must be one of: {", ".join(BACKUP_TYPES)}')

    now = datetime.now(timezone.utc)
    stamp = now.strftime('%Y-%m-%dT%H-%M-%S-%f')
    filename = f'backup-questions-{stamp}.zip' if backup_type == 'questions' else f'backup-{stamp}.zip'

    tables = dump_tables(conn, QUESTION_TABLES if backup_type == 'questions' else TABLE_ORDER)
    metadata = {
        'version': BACKUP_VERSION,
        'backupType': backup_type,
        'timestamp': now.isoformat().replace('+00:00', 'Z'),
        'createdBy': session.get('email'),
        'tables': {table: len(rows) for table, rows in tables.items()},
    }
    database = {'version': BACKUP_VERSION, 'backupType': backup_type, 'tables': tables}

    path = os.path.join(backup_folder(), filename)
    with zipfile.ZipFile(path, 'w', zipfile.ZIP_DEFLATED) as archive:
        archive.writestr('metadata.json', json.dumps(metadata, indent=2))
        archive.writestr('database.json', json.dumps(database, indent=2, default=str))

    logger.info("Backup %s created (%s, %d tables)", filename, backup_type, len(tables))
    return filename, metadata


def read_backup(data):
    """Parse an uploaded archive into (metadata, tables)"""
    try:
        with zipfile.ZipFile(io.BytesIO(data)) as archive:
            names = archive.namelist()
            if 'database.json' not in names:
                raise ApiError('Backup archive has no database.json')
            database = json.loads(archive.read('database.json'))
            metadata = json.loads(archive.read('metadata.json')) if 'metadata.json' in names else {}
    except zipfile.BadZipFile:
        raise ApiError('Uploaded file is not a valid zip archive')
    except ValueError:
        raise ApiError('Backup archive contains invalid JSON')

    tables = database.get('tables') if isinstance(database, dict) else None
    if not isinstance(tables, dict):
        raise ApiError('Backup archive has no table data')
    metadata.setdefault('backupType', database.get('backupType', 'full'))
    return metadata, tables


def restore_tables(conn, tables, backup_type='full', clear_existing=False):
    """Insert backed-up rows into known tables; returns rows restored per table"""
    existing = set(table_names(conn))
    scope = QUESTION_TABLES if backup_type == 'questions' else TABLE_ORDER
    restored = {}

    if clear_existing:
        for table in reversed(scope):
            if table in existing:
                conn.execute(f'DELETE FROM "{table}"')

    exam_ids = None
    if backup_type == 'questions':
        # links to exams that no longer exist are dropped
        exam_ids = {row['id'] for row in conn.execute('SELECT id FROM exams').fetchall()}

    for table in scope:
        rows = tables.get(table)
        if table not in existing or not rows:
            continue
        known = set(table_columns(conn, table))
        count = 0
        for row in rows:
            if not isinstance(row, dict):
                continue
            if table == 'exam_questions' and exam_ids is not None and row.get('exam_id') not in exam_ids:
                continue
            columns = [column for column in row if column in known]
            if not columns:
                continue
            column_list = ', '.join(f'"{column}"' for column in columns)
            placeholders = ', '.join('?' for _ in columns)
            cursor = conn.execute(
                f'INSERT OR IGNORE INTO "{table}" ({column_list}) VALUES ({placeholders})',
                [row[column] for column in columns],
            )
            count += cursor.rowcount
        restored[table] = count
    return restored


@bp.route('', methods=['GET'])
@role_required('admin')
def list_backups():
    folder = backup_folder()
    backups = []
    for name in os.listdir(folder):
        path = os.path.join(folder, name)
        if not name.endswith('.zip') or not os.path.isfile(path):
            continue
        stat = os.stat(path)
        backups.append({
            'name': name,
            'size': stat.st_size,
            'created': iso(datetime.fromtimestamp(stat.st_mtime, timezone.utc)),
            'type': 'questions' if name.startswith('backup-questions-') else 'full',
            'mtime': stat.st_mtime,
        })
    backups.sort(key=lambda b: (b['mtime'], b['name']), reverse=True)
    for backup in backups:
        del backup['mtime']
    return jsonify({'success': True, 'backups': backups})


@bp.route('', methods=['POST'])
@role_required('admin')
def make_backup():
    data = request.get_json(silent=True) or {}
    filename, metadata = create_backup(get_db_connection(), data.get('backupType') or 'full')
    return jsonify({'success': True, 'filename': filename, 'metadata': metadata}), 201


@bp.route('/download/<filename>')
@role_required('admin')
def download_backup(filename):
    path = backup_path(filename)
    return send_from_directory(
        os.path.abspath(os.path.dirname(path)), os.path.basename(path),
        as_attachment=True, mimetype='application/zip',
    )


@bp.route('/delete/<filename>', methods=['DELETE'])
@role_required('admin')
def delete_backup(filename):
    os.remove(backup_path(filename))
    logger.info("Backup %s deleted", filename)
    return jsonify({'success': True, 'message': 'Backup deleted'})


@bp.route('/restore', methods=['POST'])
@role_required('admin')
def restore_backup():
    upload = request.files.get('backup')
    if upload is None or not upload.filename:
        raise ApiError('No backup file provided')
    if not upload.filename.lower().endswith('.zip'):
        raise ApiError('Backup must be a .zip file')

    metadata, tables = read_backup(upload.read())
    backup_type = metadata.get('backupType', 'full')
    if backup_type not in BACKUP_TYPES:
        raise ApiError(f'Unknown backup type: {backup_type}')
    clear_existing = as_bool(request.form.get('clearExisting'))

    conn = get_db_connection()
    try:
        with conn:
            restored = restore_tables(conn, tables, backup_type, clear_existing)
    except sqlite3.IntegrityError as e:
        raise ApiError(f"Backup data conflicts with the database schema: {e}")
    clear_settings_cache()

    logger.info(
        "Backup %s restored (%s, clearExisting=%s): %d rows",
        upload.filename, backup_type, clear_existing, sum(restored.values()),
    )
    return jsonify({'success': True, 'restored': restored, 'metadata': metadata, 'message': 'Backup restored'})
