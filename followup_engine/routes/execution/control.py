"""
Execution control endpoints.

This module contains functionality for:
- Starting a sequence for an invoice
- Stopping a sequence for an invoice
- Pausing and resuming a sequence for an invoice
"""

import logging
from flask import request, jsonify

from followup_engine.exceptions import FollowUpError
from followup_engine.models import db
from followup_engine.services.sequence_engine.engagement import parse_timestamp
from followup_engine.services.triggers import TriggerEvaluator, TriggerCondition
from followup_engine.utils.error_handling import (
    handle_exception,
    handle_followup_error,
    validate_field_types,
    validate_required_fields
)

logger = logging.getLogger(__name__)

# Import the blueprint from the package
from . import execution_bp


@execution_bp.route('/sequences/<sequence_id>/executions', methods=['POST'])
def start_execution(sequence_id):
    """Start following up an invoice with a sequence."""
    try:
        data = request.get_json() or {}

        validation_error = validate_required_fields(data, ['invoiceId'])
        if validation_error:
            return validation_error

        type_error = validate_field_types(data, {
            'startImmediately': bool,
            'skipValidation': bool,
            'triggerCondition': dict
        })
        if type_error:
            return type_error

        if data.get('triggerCondition'):
            condition = TriggerCondition.from_dict(data['triggerCondition'])
        else:
            condition = TriggerCondition.manual(data.get('triggerReason'))

        custom_start_time = None
        if data.get('customStartTime'):
            custom_start_time = parse_timestamp(data['customStartTime'])

        execution = TriggerEvaluator().start(
            sequence_id,
            data['invoiceId'],
            condition=condition,
            start_immediately=data.get('startImmediately', False),
            custom_start_time=custom_start_time,
            skip_validation=data.get('skipValidation', False)
        )

        return jsonify({
            'message': 'Sequence started successfully',
            'executionId': execution.id,
            'status': execution.status,
            'next_run_at': execution.next_run_at.isoformat() if execution.next_run_at else None
        }), 201

    except FollowUpError as e:
        db.session.rollback()
        return handle_followup_error(e)
    except Exception as e:
        db.session.rollback()
        return handle_exception(e, "sequence start")


@execution_bp.route('/sequences/<sequence_id>/executions/<invoice_id>/stop', methods=['POST'])
def stop_execution(sequence_id, invoice_id):
    """Stop the sequence for an invoice. Stopping twice is not an error."""
    try:
        data = request.get_json(silent=True) or {}
        reason = data.get('reason') or 'manual'

        result = TriggerEvaluator().stop(sequence_id, invoice_id, reason)
        if result['stopped']:
            result['message'] = 'Sequence stopped successfully'
        return jsonify(result)

    except FollowUpError as e:
        db.session.rollback()
        return handle_followup_error(e)
    except Exception as e:
        db.session.rollback()
        return handle_exception(e, "sequence stop")


@execution_bp.route('/sequences/<sequence_id>/executions/<invoice_id>/pause', methods=['POST'])
def pause_execution(sequence_id, invoice_id):
    """Pause the sequence for an invoice."""
    try:
        return jsonify(TriggerEvaluator().pause(sequence_id, invoice_id))

    except FollowUpError as e:
        db.session.rollback()
        return handle_followup_error(e)
    except Exception as e:
        db.session.rollback()
        return handle_exception(e, "sequence pause")


@execution_bp.route('/sequences/<sequence_id>/executions/<invoice_id>/resume', methods=['POST'])
def resume_execution(sequence_id, invoice_id):
    """Resume a paused sequence for an invoice."""
    try:
        return jsonify(TriggerEvaluator().resume(sequence_id, invoice_id))

    except FollowUpError as e:
        db.session.rollback()
        return handle_followup_error(e)
    except Exception as e:
        db.session.rollback()
        return handle_exception(e, "sequence resume")
