"""
Execution status endpoints.

This module contains functionality for:
- The status of a sequence for an invoice
- Listing an invoice's executions
- An execution's event history
"""

import logging
from flask import jsonify

from followup_engine.models import db, Event, Execution, Invoice
from followup_engine.services.triggers import TriggerEvaluator
from followup_engine.utils.error_handling import handle_exception, handle_not_found_error

logger = logging.getLogger(__name__)

# Import the blueprint from the package
from . import execution_bp


@execution_bp.route('/sequences/<sequence_id>/executions/<invoice_id>', methods=['GET'])
def get_execution_status(sequence_id, invoice_id):
    """Progress of the sequence for an invoice: the live execution, else the latest one."""
    try:
        return jsonify(TriggerEvaluator().status(sequence_id, invoice_id))
    except Exception as e:
        return handle_exception(e, "execution status")


@execution_bp.route('/invoices/<invoice_id>/executions', methods=['GET'])
def list_invoice_executions(invoice_id):
    """All executions for an invoice, newest first."""
    invoice = db.session.get(Invoice, invoice_id)
    if not invoice:
        return handle_not_found_error("Invoice", invoice_id)

    executions = Execution.query.filter_by(invoice_id=invoice_id).order_by(Execution.started_at.desc()).all()
    return jsonify({
        'invoice_id': invoice_id,
        'executions': [execution.to_dict() for execution in executions],
        'total': len(executions)
    })


@execution_bp.route('/executions/<execution_id>/events', methods=['GET'])
def get_execution_events(execution_id):
    """Event history of an execution."""
    execution = db.session.get(Execution, execution_id)
    if not execution:
        return handle_not_found_error("Execution", execution_id)

    events = Event.query.filter_by(execution_id=execution_id).order_by(Event.timestamp.asc()).all()
    return jsonify({
        'execution_id': execution_id,
        'events': [event.to_dict() for event in events]
    })
