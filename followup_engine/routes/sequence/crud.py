"""
Basic CRUD operations for sequences.

This module contains functionality for:
- Creating a company's sequence
- Listing a company's sequences
- Getting a sequence
- Updating a sequence (replacing steps bumps its revision)
"""

import logging
from flask import request, jsonify

from followup_engine.exceptions import FollowUpError
from followup_engine.models import db, Company, Sequence
from followup_engine.services.sequence_engine import SequenceEngine
from followup_engine.utils.error_handling import (
    handle_exception,
    handle_followup_error,
    handle_not_found_error,
    handle_validation_error
)

logger = logging.getLogger(__name__)

# Import the blueprint from the package
from . import sequence_bp


@sequence_bp.route('/companies/<company_id>/sequences', methods=['POST'])
def create_sequence(company_id):
    """Create a follow-up sequence for a company."""
    try:
        data = request.get_json()
        if not data:
            return handle_validation_error("Sequence definition is required")

        sequence = SequenceEngine().create_sequence(company_id, data)

        return jsonify({
            'message': 'Sequence created successfully',
            'sequence': sequence.to_dict()
        }), 201

    except FollowUpError as e:
        db.session.rollback()
        return handle_followup_error(e)
    except Exception as e:
        db.session.rollback()
        return handle_exception(e, "sequence creation")


@sequence_bp.route('/companies/<company_id>/sequences', methods=['GET'])
def list_sequences(company_id):
    """List a company's sequences."""
    company = db.session.get(Company, company_id)
    if not company:
        return handle_not_found_error("Company", company_id)

    include_steps = request.args.get('include_steps', 'false').lower() == 'true'
    sequences = Sequence.query.filter_by(company_id=company_id).order_by(Sequence.created_at.asc()).all()
    return jsonify({
        'company_id': company_id,
        'sequences': [sequence.to_dict(include_steps=include_steps) for sequence in sequences],
        'total': len(sequences)
    })


@sequence_bp.route('/sequences/<sequence_id>', methods=['GET'])
def get_sequence(sequence_id):
    """Get a sequence with its steps and the company's business calendar."""
    try:
        sequence = db.session.get(Sequence, sequence_id)
        if not sequence:
            return handle_not_found_error("Sequence", sequence_id)

        return jsonify(SequenceEngine().get_sequence_info(sequence))

    except FollowUpError as e:
        return handle_followup_error(e)
    except Exception as e:
        return handle_exception(e, "sequence retrieval")


@sequence_bp.route('/sequences/<sequence_id>', methods=['PUT'])
def update_sequence(sequence_id):
    """Update a sequence definition."""
    try:
        data = request.get_json()
        if not data:
            return handle_validation_error("Sequence update is required")

        sequence = SequenceEngine().update_sequence(sequence_id, data)

        return jsonify({
            'message': 'Sequence updated successfully',
            'sequence': sequence.to_dict()
        })

    except FollowUpError as e:
        db.session.rollback()
        return handle_followup_error(e)
    except Exception as e:
        db.session.rollback()
        return handle_exception(e, "sequence update")
