import logging
import os

from flask import Flask

from . import (
    attempts, auth, backup, dashboard, db, exams, payments, proctoring, results, settings, users,
)
from .config import Config
from .errors import register_error_handlers

LOG_FORMAT = '%(asctime)s %(levelname)s [%(name)s] %(message)s'

BLUEPRINTS = (
    auth.bp, settings.bp, exams.bp, attempts.bp, proctoring.bp, results.bp,
    payments.bp, users.bp, dashboard.bp, backup.bp,
)


def configure_logging(level):
    logging.basicConfig(level=level, format=LOG_FORMAT)
    logging.getLogger('examcenter').setLevel(level)


def create_app(config=None):
    """Application factory; config is a mapping applied over Config"""
    app = Flask(__name__)
    app.config.from_object(Config)
    if config:
        app.config.update(config)

    configure_logging(app.config['LOG_LEVEL'])

    db.init_app(app)
    proctoring.init_app(app)
    register_error_handlers(app)

    @app.after_request
    def after_request(response):
        """Add security headers to all responses"""
        response.headers['X-Content-Type-Options'] = 'nosniff'
        response.headers['X-Frame-Options'] = 'DENY'
        response.headers['X-XSS-Protection'] = '1; mode=block'
        response.headers['Strict-Transport-Security'] = 'max-age=31536000; includeSubDomains'
        return response

    for blueprint in BLUEPRINTS:
        app.register_blueprint(blueprint)

    os.makedirs(app.config['UPLOAD_FOLDER'], exist_ok=True)
    os.makedirs(app.config['BACKUP_FOLDER'], exist_ok=True)

    if app.config.get('INIT_DB'):
        db.init_database(
            app.config['DATABASE'],
            app.config['DEFAULT_ADMIN_EMAIL'],
            app.config['DEFAULT_ADMIN_PASSWORD'],
        )

    return app
