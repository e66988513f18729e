import logging
import os
import sqlite3
import uuid
from datetime import datetime, timezone

import click
from flask import current_app, g
from flask.cli import with_appcontext
from werkzeug.security import generate_password_hash

logger = logging.getLogger(__name__)

TIMESTAMP_FORMAT = '%Y-%m-%d %H:%M:%S'

SCHEMA = [
    '''
    CREATE TABLE IF NOT EXISTS users (
        id TEXT PRIMARY KEY,
        email TEXT UNIQUE NOT NULL,
        password_hash TEXT NOT NULL,
        full_name TEXT NOT NULL,
        phone TEXT,
        role TEXT NOT NULL DEFAULT 'student',
        status TEXT NOT NULL DEFAULT 'active',
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        last_login_at TIMESTAMP
    )
    ''',
    '''
    CREATE TABLE IF NOT EXISTS login_attempts (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        email TEXT NOT NULL,
        success BOOLEAN DEFAULT 0,
        ip_address TEXT,
        attempted_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    )
    ''',
    '''
    CREATE TABLE IF NOT EXISTS admin_settings (
        setting_key TEXT PRIMARY KEY,
        setting_value TEXT,
        updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    )
    ''',
    '''
    CREATE TABLE IF NOT EXISTS programs (
        id TEXT PRIMARY KEY,
        title TEXT NOT NULL,
        description TEXT,
        instructions TEXT,
        enrollment_fee REAL DEFAULT 0,
        status TEXT DEFAULT 'published',
        max_students INTEGER,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    )
    ''',
    '''
    CREATE TABLE IF NOT EXISTS program_enrollments (
        id TEXT PRIMARY KEY,
        program_id TEXT NOT NULL,
        user_id TEXT NOT NULL,
        status TEXT DEFAULT 'active',
        payment_status TEXT DEFAULT 'free',
        transaction_id TEXT,
        enrolled_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        UNIQUE (program_id, user_id),
        FOREIGN KEY (program_id) REFERENCES programs (id) ON DELETE CASCADE,
        FOREIGN KEY (user_id) REFERENCES users (id) ON DELETE CASCADE
    )
    ''',
    '''
    CREATE TABLE IF NOT EXISTS exams (
        id TEXT PRIMARY KEY,
        title TEXT NOT NULL,
        description TEXT,
        instructions TEXT,
        duration_minutes INTEGER NOT NULL DEFAULT 60,
        total_marks REAL DEFAULT 0,
        passing_percentage REAL DEFAULT 40,
        negative_marking REAL DEFAULT 0.25,
        status TEXT DEFAULT 'draft',
        starts_at TIMESTAMP,
        ends_at TIMESTAMP,
        randomize_questions BOOLEAN DEFAULT 0,
        proctoring_enabled BOOLEAN DEFAULT 1,
        allow_answer_change BOOLEAN DEFAULT 1,
        show_question_counter BOOLEAN DEFAULT 1,
        allow_answer_review BOOLEAN DEFAULT 1,
        created_by TEXT,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    )
    ''',
    '''
    CREATE TABLE IF NOT EXISTS exam_programs (
        exam_id TEXT NOT NULL,
        program_id TEXT NOT NULL,
        PRIMARY KEY (exam_id, program_id),
        FOREIGN KEY (exam_id) REFERENCES exams (id) ON DELETE CASCADE,
        FOREIGN KEY (program_id) REFERENCES programs (id) ON DELETE CASCADE
    )
    ''',
    '''
    CREATE TABLE IF NOT EXISTS questions (
        id TEXT PRIMARY KEY,
        question_text TEXT NOT NULL,
        question_type TEXT DEFAULT 'mcq',
        marks REAL DEFAULT 1,
        negative_marks REAL,
        correct_answer TEXT,
        explanation TEXT,
        randomize_options BOOLEAN DEFAULT 0,
        in_bank BOOLEAN DEFAULT 0,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    )
    ''',
    '''
    CREATE TABLE IF NOT EXISTS question_options (
        id TEXT PRIMARY KEY,
        question_id TEXT NOT NULL,
        option_text TEXT NOT NULL,
        option_label TEXT,
        is_correct BOOLEAN DEFAULT 0,
        sequence INTEGER DEFAULT 0,
        FOREIGN KEY (question_id) REFERENCES questions (id) ON DELETE CASCADE
    )
    ''',
    '''
    CREATE TABLE IF NOT EXISTS exam_questions (
        exam_id TEXT NOT NULL,
        question_id TEXT NOT NULL,
        sequence INTEGER DEFAULT 0,
        PRIMARY KEY (exam_id, question_id),
        FOREIGN KEY (exam_id) REFERENCES exams (id) ON DELETE CASCADE,
        FOREIGN KEY (question_id) REFERENCES questions (id) ON DELETE CASCADE
    )
    ''',
    '''
    CREATE TABLE IF NOT EXISTS exam_registrations (
        id TEXT PRIMARY KEY,
        exam_id TEXT NOT NULL,
        student_id TEXT NOT NULL,
        status TEXT DEFAULT 'registered',
        registered_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        UNIQUE (exam_id, student_id),
        FOREIGN KEY (exam_id) REFERENCES exams (id) ON DELETE CASCADE,
        FOREIGN KEY (student_id) REFERENCES users (id) ON DELETE CASCADE
    )
    ''',
    '''
    CREATE TABLE IF NOT EXISTS exam_attempts (
        id TEXT PRIMARY KEY,
        exam_id TEXT NOT NULL,
        student_id TEXT NOT NULL,
        exam_registration_id TEXT,
        start_time TIMESTAMP NOT NULL,
        end_time TIMESTAMP,
        duration_minutes INTEGER NOT NULL,
        status TEXT DEFAULT 'ongoing',
        attempt_number INTEGER DEFAULT 1,
        total_time_spent INTEGER DEFAULT 0,
        ip_address TEXT,
        user_agent TEXT,
        FOREIGN KEY (exam_id) REFERENCES exams (id) ON DELETE CASCADE,
        FOREIGN KEY (student_id) REFERENCES users (id) ON DELETE CASCADE
    )
    ''',
    '''
    CREATE TABLE IF NOT EXISTS exam_progress (
        id TEXT PRIMARY KEY,
        attempt_id TEXT UNIQUE NOT NULL,
        current_question_index INTEGER DEFAULT 0,
        answers_json TEXT DEFAULT '{}',
        flagged_questions_json TEXT DEFAULT '[]',
        last_saved_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        FOREIGN KEY (attempt_id) REFERENCES exam_attempts (id) ON DELETE CASCADE
    )
    ''',
    '''
    CREATE TABLE IF NOT EXISTS exam_answers (
        id TEXT PRIMARY KEY,
        attempt_id TEXT NOT NULL,
        question_id TEXT NOT NULL,
        answer_text TEXT,
        selected_option BLOB,  -- index (INTEGER) or option id (TEXT), stored as given
        is_flagged BOOLEAN DEFAULT 0,
        is_correct BOOLEAN DEFAULT 0,
        marks_obtained REAL DEFAULT 0,
        time_spent_seconds INTEGER DEFAULT 0,
        updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        UNIQUE (attempt_id, question_id),
        FOREIGN KEY (attempt_id) REFERENCES exam_attempts (id) ON DELETE CASCADE
    )
    ''',
    '''
    CREATE TABLE IF NOT EXISTS exam_results (
        id TEXT PRIMARY KEY,
        exam_id TEXT NOT NULL,
        student_id TEXT NOT NULL,
        attempt_id TEXT UNIQUE NOT NULL,
        attempt_number INTEGER,
        total_marks REAL,
        obtained_marks REAL,
        percentage REAL,
        grade TEXT,
        correct_answers INTEGER,
        incorrect_answers INTEGER,
        unanswered INTEGER,
        time_spent INTEGER,
        status TEXT,
        negative_marking_applied REAL,
        is_published BOOLEAN DEFAULT 0,
        result_date TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        FOREIGN KEY (attempt_id) REFERENCES exam_attempts (id) ON DELETE CASCADE
    )
    ''',
    '''
    CREATE TABLE IF NOT EXISTS anti_cheat_events (
        id TEXT PRIMARY KEY,
        attempt_id TEXT NOT NULL,
        event_type TEXT NOT NULL,
        severity TEXT DEFAULT 'medium',
        description TEXT,
        metadata_json TEXT,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        FOREIGN KEY (attempt_id) REFERENCES exam_attempts (id) ON DELETE CASCADE
    )
    ''',
    '''
    CREATE TABLE IF NOT EXISTS transactions (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        program_id TEXT,
        amount REAL NOT NULL,
        discount_amount REAL DEFAULT 0,
        final_amount REAL NOT NULL,
        currency TEXT DEFAULT 'USD',
        coupon_code TEXT,
        payment_method TEXT,
        reference TEXT,
        payment_status TEXT DEFAULT 'pending',
        admin_notes TEXT,
        approved_by TEXT,
        approved_at TIMESTAMP,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        FOREIGN KEY (user_id) REFERENCES users (id) ON DELETE CASCADE
    )
    ''',
    '''
    CREATE TABLE IF NOT EXISTS coupons (
        id TEXT PRIMARY KEY,
        code TEXT UNIQUE NOT NULL,
        discount_type TEXT NOT NULL DEFAULT 'percentage',
        discount_value REAL NOT NULL,
        max_discount REAL,
        min_amount REAL,
        max_uses INTEGER,
        used_count INTEGER DEFAULT 0,
        valid_until TIMESTAMP,
        is_active BOOLEAN DEFAULT 1
    )
    ''',
]


def new_id():
    return str(uuid.uuid4())


def utcnow():
    return datetime.now(timezone.utc).replace(microsecond=0)


def format_ts(value):
    """Format an aware or naive UTC datetime the way timestamps are stored"""
    if value is None:
        return None
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc)
    return value.strftime(TIMESTAMP_FORMAT)


def parse_ts(value):
    """Parse a stored timestamp (or ISO 8601 string) into an aware UTC datetime"""
    if value is None or value == '':
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        text = str(value).strip().replace('Z', '+00:00')
        try:
            parsed = datetime.strptime(text, TIMESTAMP_FORMAT)
        except ValueError:
            parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def iso(value):
    parsed = parse_ts(value)
    return parsed.isoformat().replace('+00:00', 'Z') if parsed else None


def row_to_dict(row):
    return dict(row) if row is not None else None


def connect(database):
    directory = os.path.dirname(database)
    if directory:
        os.makedirs(directory, exist_ok=True)
    conn = sqlite3.connect(database)
    conn.row_factory = sqlite3.Row
    conn.execute('PRAGMA foreign_keys = ON')
    return conn


def get_db_connection():
    """Connection bound to the current app context, closed on teardown"""
    if 'db' not in g:
        g.db = connect(current_app.config['DATABASE'])
    return g.db


def close_db_connection(error=None):
    conn = g.pop('db', None)
    if conn is not None:
        conn.close()


def init_database(database, admin_email, admin_password):
    """Create every table and seed the default administrator"""
    conn = connect(database)
    try:
        for statement in SCHEMA:
            conn.execute(statement)

        conn.execute('''
            INSERT OR IGNORE INTO users (id, email, password_hash, full_name, role, status)
            VALUES (?, ?, ?, ?, 'admin', 'active')
        ''', (new_id(), admin_email.lower(), generate_password_hash(admin_password), 'System Administrator'))

        conn.commit()
        logger.info("Database initialized at %s", database)
    finally:
        conn.close()


def table_names(conn):
    rows = conn.execute("SELECT name FROM sqlite_master WHERE type = 'table' AND name NOT LIKE 'sqlite_%'").fetchall()
    return [row['name'] for row in rows]


def table_columns(conn, table):
    return [row['name'] for row in conn.execute(f'PRAGMA table_info("{table}")').fetchall()]


@click.command('init-db')
@with_appcontext
def init_db_command():
    """Create tables and seed the default admin"""
    init_database(
        current_app.config['DATABASE'],
        current_app.config['DEFAULT_ADMIN_EMAIL'],
        current_app.config['DEFAULT_ADMIN_PASSWORD'],
    )
    click.echo('Database initialized')


def init_app(app):
    app.teardown_appcontext(close_db_connection)
    app.cli.add_command(init_db_command)
