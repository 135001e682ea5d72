"""
Error responses for the follow-up API.

Every endpoint answers failures with the same body:

    {"error": {"code": ..., "message": ..., "details": ..., "timestamp": ...}}

Engine exceptions (FollowUpError subclasses) carry their own code; other
exceptions are sorted into client, database and internal failures here.
"""

import logging
from datetime import datetime
from typing import Dict, Any, Optional
from flask import jsonify
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from werkzeug.exceptions import HTTPException

from followup_engine.exceptions import ConflictError, FollowUpError

logger = logging.getLogger(__name__)

# Error code -> HTTP status
STATUS_CODES = {
    # Request problems
    'VALIDATION_ERROR': 400,
    'BAD_REQUEST': 400,
    'UNAUTHORIZED': 401,
    'NOT_FOUND': 404,
    'CONFLICT': 409,

    # Engine rules
    'INVALID_CALENDAR': 400,
    'SEQUENCE_NOT_ACTIVE': 400,
    'WEBHOOK_ERROR': 400,
    'EXECUTION_ALREADY_ACTIVE': 409,
    'INVOICE_NOT_ELIGIBLE': 422,
    'COMPLIANCE_REJECTED': 422,

    # Our side or the provider's
    'INTERNAL_ERROR': 500,
    'DATABASE_ERROR': 500,
    'EXTERNAL_API_ERROR': 502,
}

ERROR_CODES = {code: code for code in STATUS_CODES}


def _error_body(code: str, message: str, details: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    body = {
        'code': code,
        'message': message,
        'timestamp': datetime.utcnow().isoformat()
    }
    if details:
        body['details'] = details
    return body


def create_error_response(
    code: str,
    message: str,
    details: Optional[Dict[str, Any]] = None,
    status_code: Optional[int] = None
) -> tuple:
    """
    Build a ``(response, status)`` pair in the shared error format.

    Unknown codes are reported as INTERNAL_ERROR. ``status_code`` overrides
    the status registered for the code (used for 405s and other werkzeug
    errors).
    """
    if code not in STATUS_CODES:
        logger.warning(f"Unregistered error code '{code}', answering with INTERNAL_ERROR")
        code = 'INTERNAL_ERROR'

    return jsonify({'error': _error_body(code, message, details)}), status_code or STATUS_CODES[code]


def handle_followup_error(error: FollowUpError) -> tuple:
    """Turn an engine exception into a response using its error code.

    A ConflictError also carries ``existing_execution_id`` at the top level
    so callers can address the execution that is already running.
    """
    if isinstance(error, ConflictError):
        body = {
            'error': _error_body(error.code, error.message, error.details),
            'existing_execution_id': error.existing_execution_id
        }
        return jsonify(body), STATUS_CODES[error.code]

    logger.info(f"{type(error).__name__}: {error.message}")
    return create_error_response(error.code, error.message, error.details or None)


def handle_validation_error(message: str, details: Optional[Dict[str, Any]] = None) -> tuple:
    return create_error_response('VALIDATION_ERROR', message, details)


def handle_not_found_error(resource: str, resource_id: Optional[str] = None) -> tuple:
    message = f"{resource} {resource_id} not found" if resource_id else f"{resource} not found"
    return create_error_response('NOT_FOUND', message)


def handle_unauthorized_error(message: str = "Invalid webhook signature") -> tuple:
    return create_error_response('UNAUTHORIZED', message)


def handle_database_error(error: Exception, operation: str = "database operation") -> tuple:
    """Constraint violations are conflicts; every other database failure is a 500."""
    logger.error(f"Database error during {operation}: {str(error)}")

    if isinstance(error, IntegrityError):
        return create_error_response('CONFLICT', f"Conflicting data during {operation}")
    return create_error_response('DATABASE_ERROR', f"Database error during {operation}")


def handle_exception(error: Exception, operation: str = "request processing") -> tuple:
    """
    Map any exception raised by a view to an error response.

    Engine exceptions keep their own code, werkzeug HTTP errors keep their
    status, database errors go through handle_database_error, and
    ValueError/KeyError/TypeError count as bad input. Anything else is logged
    and answered with INTERNAL_ERROR.
    """
    if isinstance(error, FollowUpError):
        return handle_followup_error(error)
    if isinstance(error, HTTPException):
        return create_error_response('BAD_REQUEST', error.description, status_code=error.code)
    if isinstance(error, SQLAlchemyError):
        return handle_database_error(error, operation)
    if isinstance(error, KeyError):
        return handle_validation_error(f"Missing required field: {str(error)}")
    if isinstance(error, (ValueError, TypeError)):
        return handle_validation_error(str(error))

    logger.error(f"Unexpected {type(error).__name__} during {operation}: {str(error)}")
    return create_error_response('INTERNAL_ERROR', f"Unexpected error during {operation}")


def validate_required_fields(data: Dict[str, Any], required_fields: list) -> Optional[tuple]:
    """Return a 400 response naming the missing (or null) fields, or None."""
    missing_fields = [field for field in required_fields if data.get(field) is None]
    if not missing_fields:
        return None

    return handle_validation_error(
        f"Missing required fields: {', '.join(missing_fields)}",
        {'missing_fields': missing_fields, 'required_fields': required_fields}
    )


def validate_field_types(data: Dict[str, Any], field_types: Dict[str, Any]) -> Optional[tuple]:
    """Return a 400 response listing fields whose value has the wrong type, or None.

    Absent and null fields are not checked; ``field_types`` values may be a
    type or a tuple of types.
    """
    type_errors = []
    for field, expected in field_types.items():
        value = data.get(field)
        if value is None or isinstance(value, expected):
            continue
        names = [t.__name__ for t in expected] if isinstance(expected, tuple) else [expected.__name__]
        type_errors.append({
            'field': field,
            'expected_type': ' or '.join(names),
            'actual_type': type(value).__name__
        })

    if not type_errors:
        return None

    return handle_validation_error(
        f"Invalid types for: {', '.join(e['field'] for e in type_errors)}",
        {'type_errors': type_errors}
    )
