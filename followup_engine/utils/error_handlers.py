"""
App-wide error handlers.

Views already catch their own exceptions; these cover whatever escapes a
view (and routing errors such as unknown URLs) so that every failure uses
the shared error body.
"""

import logging
from werkzeug.exceptions import HTTPException
from sqlalchemy.exc import SQLAlchemyError

from followup_engine.exceptions import FollowUpError
from .error_handling import (
    handle_exception,
    handle_followup_error,
    handle_not_found_error,
    handle_validation_error,
    create_error_response
)

logger = logging.getLogger(__name__)


def register_error_handlers(app):
    """Attach the JSON error handlers to ``app``."""

    @app.errorhandler(FollowUpError)
    def followup_error(error):
        return handle_followup_error(error)

    @app.errorhandler(400)
    def bad_request(error):
        return handle_validation_error(getattr(error, 'description', None) or "Malformed request")

    @app.errorhandler(404)
    def unknown_url(error):
        return handle_not_found_error("Endpoint")

    @app.errorhandler(405)
    def wrong_method(error):
        allowed = ', '.join(sorted(error.valid_methods or []))
        return create_error_response('BAD_REQUEST', f"Method not allowed here (allowed: {allowed})", status_code=405)

    @app.errorhandler(SQLAlchemyError)
    def database_error(error):
        return handle_exception(error, "database operation")

    @app.errorhandler(HTTPException)
    def other_http_error(error):
        return create_error_response('BAD_REQUEST', error.description or error.name, status_code=error.code)

    @app.errorhandler(Exception)
    def unhandled(error):
        logger.exception(f"Unhandled {type(error).__name__} escaped a view")
        return handle_exception(error, "request processing")
