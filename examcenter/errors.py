import logging

from flask import jsonify
from werkzeug.exceptions import HTTPException

logger = logging.getLogger(__name__)


class ApiError(Exception):
    """Error raised from a request handler and rendered as a JSON response"""

    def __init__(self, message, status_code=400, **payload):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.payload = payload

    def to_dict(self):
        body = {'success': False, 'message': self.message}
        body.update(self.payload)
        return body


def register_error_handlers(app):
    @app.errorhandler(ApiError)
    def handle_api_error(error):
        return jsonify(error.to_dict()), error.status_code

    @app.errorhandler(HTTPException)
    def handle_http_error(error):
        return jsonify({'success': False, 'message': error.description}), error.code

    @app.errorhandler(Exception)
    def handle_unexpected(error):
        logger.exception("Unhandled error: %s", error)
        return jsonify({'success': False, 'message': 'An unexpected error occurred. Please try again.'}), 500
