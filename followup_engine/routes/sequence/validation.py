"""
Sequence validation and previews.

This module contains functionality for:
- Sequence validation
- The example sequence
- Rendering a step for an invoice without sending it
"""

import logging
from flask import request, jsonify

from followup_engine.exceptions import FollowUpError
from followup_engine.models import db, Company, Invoice, Sequence
from followup_engine.services.sequence_engine import SequenceEngine, EXAMPLE_SEQUENCE
from followup_engine.utils.error_handling import (
    handle_exception,
    handle_followup_error,
    handle_not_found_error,
    handle_validation_error,
    validate_required_fields
)

logger = logging.getLogger(__name__)

# Import the blueprint from the package
from . import sequence_bp


@sequence_bp.route('/sequences/validate', methods=['POST'])
def validate_sequence():
    """Validate a sequence definition without saving it."""
    try:
        data = request.get_json()
        if not data or 'steps' not in data:
            return handle_validation_error("Sequence steps are required")

        require_bilingual = bool(data.get('requireBilingual', False))
        company_id = data.get('companyId')
        if company_id:
            company = db.session.get(Company, company_id)
            if not company:
                return handle_not_found_error("Company", company_id)
            require_bilingual = company.require_bilingual

        result = SequenceEngine().validate_sequence(
            data['steps'],
            data.get('triggerConditions'),
            require_bilingual
        )

        return jsonify({
            'valid': result['valid'],
            'errors': result.get('errors', []),
            'warnings': result.get('warnings', [])
        }), 200

    except Exception as e:
        logger.error(f"Error validating sequence: {str(e)}")
        return handle_exception(e, "sequence validation")


@sequence_bp.route('/sequences/example', methods=['GET'])
def get_example_sequence():
    """Get an example follow-up sequence."""
    return jsonify({
        'steps': EXAMPLE_SEQUENCE,
        'description': 'Three-step follow-up: friendly reminder, bilingual business notice, formal notice'
    })


@sequence_bp.route('/sequences/<sequence_id>/preview', methods=['POST'])
def preview_sequence_step(sequence_id):
    """Render one step of a sequence for an invoice."""
    try:
        sequence = db.session.get(Sequence, sequence_id)
        if not sequence:
            return handle_not_found_error("Sequence", sequence_id)

        data = request.get_json() or {}
        validation_error = validate_required_fields(data, ['invoiceId'])
        if validation_error:
            return validation_error

        invoice = db.session.get(Invoice, data['invoiceId'])
        if not invoice:
            return handle_not_found_error("Invoice", data['invoiceId'])

        step_index = data.get('stepIndex', 0)
        if isinstance(step_index, bool) or not isinstance(step_index, int):
            return handle_validation_error("stepIndex must be an integer")

        return jsonify(SequenceEngine().preview_step(sequence, step_index, invoice))

    except FollowUpError as e:
        return handle_followup_error(e)
    except Exception as e:
        return handle_exception(e, "step preview")
