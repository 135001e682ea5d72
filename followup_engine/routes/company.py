"""
Company and invoice routes.

This module contains functionality for:
- Registering companies with their business calendar
- Registering invoices
- Invoice status changes, which stop or trigger follow-ups
"""

import logging
from datetime import date
from flask import Blueprint, request, jsonify, current_app
from sqlalchemy.exc import IntegrityError

from followup_engine.exceptions import FollowUpError, ValidationError
from followup_engine.models import db, Company, Invoice, InvoiceStatus
from followup_engine.services.business_window import BusinessWindow
from followup_engine.services.triggers import TriggerEvaluator
from followup_engine.utils.error_handling import (
    handle_database_error,
    handle_exception,
    handle_followup_error,
    handle_not_found_error,
    handle_validation_error,
    validate_field_types,
    validate_required_fields
)

logger = logging.getLogger(__name__)

company_bp = Blueprint('company', __name__)


def _parse_date(value, field):
    if value is None:
        return None
    try:
        return date.fromisoformat(str(value))
    except ValueError:
        raise ValidationError(f"{field} must be an ISO date (YYYY-MM-DD)")


@company_bp.route('/companies', methods=['POST'])
def create_company():
    """Create a company with its business calendar."""
    try:
        data = request.get_json() or {}

        validation_error = validate_required_fields(data, ['name'])
        if validation_error:
            return validation_error

        config = current_app.config
        working_days = data.get('workingDays', config.get('DEFAULT_WORKING_DAYS'))
        start_hour = data.get('startHour', config.get('DEFAULT_START_HOUR', 8))
        end_hour = data.get('endHour', config.get('DEFAULT_END_HOUR', 18))
        timezone = data.get('timezone', config.get('DEFAULT_TIMEZONE', 'Asia/Dubai'))
        holidays = data.get('holidays') or []
        uae_rules = {
            'observe_uae_holidays': bool(data.get('observeUaeHolidays', False)),
            'avoid_prayer_times': bool(data.get('avoidPrayerTimes', False)),
            'respect_ramadan': bool(data.get('respectRamadan', False)),
        }

        # Rejects calendars that can never produce a send time
        BusinessWindow(working_days, start_hour, end_hour, timezone, holidays, **uae_rules)

        company = Company(
            name=data['name'],
            timezone=timezone,
            working_days=working_days,
            start_hour=start_hour,
            end_hour=end_hour,
            holidays=holidays,
            require_bilingual=bool(data.get('requireBilingual', False)),
            support_email=data.get('supportEmail'),
            support_phone=data.get('supportPhone'),
            **uae_rules
        )
        db.session.add(company)
        db.session.commit()

        return jsonify({
            'message': 'Company created successfully',
            'company': company.to_dict()
        }), 201

    except FollowUpError as e:
        db.session.rollback()
        return handle_followup_error(e)
    except Exception as e:
        db.session.rollback()
        return handle_exception(e, "company creation")


@company_bp.route('/companies/<company_id>', methods=['GET'])
def get_company(company_id):
    """Get a company."""
    company = db.session.get(Company, company_id)
    if not company:
        return handle_not_found_error("Company", company_id)
    return jsonify({'company': company.to_dict()})


@company_bp.route('/companies/<company_id>/invoices', methods=['POST'])
def create_invoice(company_id):
    """Register an invoice for a company."""
    try:
        company = db.session.get(Company, company_id)
        if not company:
            return handle_not_found_error("Company", company_id)

        data = request.get_json() or {}

        validation_error = validate_required_fields(data, ['number', 'amount'])
        if validation_error:
            return validation_error

        type_error = validate_field_types(data, {'amount': (int, float), 'amountPaid': (int, float)})
        if type_error:
            return type_error

        status = str(data.get('status') or InvoiceStatus.SENT).upper()
        if status not in InvoiceStatus.ALL:
            return handle_validation_error(f"Invalid invoice status '{status}'", {'valid_statuses': list(InvoiceStatus.ALL)})

        invoice = Invoice(
            company_id=company_id,
            number=data['number'],
            customer_name=data.get('customerName'),
            customer_email=data.get('customerEmail'),
            amount=float(data['amount']),
            amount_paid=float(data.get('amountPaid') or 0),
            currency=data.get('currency') or 'AED',
            due_date=_parse_date(data.get('dueDate'), 'dueDate'),
            status=status
        )
        db.session.add(invoice)
        db.session.commit()

        return jsonify({
            'message': 'Invoice created successfully',
            'invoice': invoice.to_dict()
        }), 201

    except IntegrityError as e:
        db.session.rollback()
        return handle_database_error(e, "invoice creation")
    except FollowUpError as e:
        db.session.rollback()
        return handle_followup_error(e)
    except Exception as e:
        db.session.rollback()
        return handle_exception(e, "invoice creation")


@company_bp.route('/invoices/<invoice_id>', methods=['GET'])
def get_invoice(invoice_id):
    """Get an invoice."""
    invoice = db.session.get(Invoice, invoice_id)
    if not invoice:
        return handle_not_found_error("Invoice", invoice_id)
    return jsonify({'invoice': invoice.to_dict()})


@company_bp.route('/invoices/<invoice_id>/status', methods=['POST'])
def change_invoice_status(invoice_id):
    """Record an invoice status change.

    Paid, written-off, cancelled and disputed invoices stop their live
    follow-ups; an invoice becoming overdue is offered to the automatic
    triggers.
    """
    try:
        data = request.get_json() or {}

        validation_error = validate_required_fields(data, ['status'])
        if validation_error:
            return validation_error

        status = str(data['status']).upper()
        if status not in InvoiceStatus.ALL:
            return handle_validation_error(f"Invalid invoice status '{status}'", {'valid_statuses': list(InvoiceStatus.ALL)})

        amount_paid = data.get('amountPaid')
        if amount_paid is not None and not isinstance(amount_paid, (int, float)):
            return handle_validation_error("amountPaid must be a number")

        result = TriggerEvaluator().handle_invoice_status_change(invoice_id, status, amount_paid)

        return jsonify({
            'message': f"Invoice status changed from {result['previous_status']} to {status}",
            'invoice': result['invoice'],
            'stopped_executions': result['stopped_executions'],
            'triggered_executions': result['triggered_executions']
        })

    except FollowUpError as e:
        db.session.rollback()
        return handle_followup_error(e)
    except Exception as e:
        db.session.rollback()
        return handle_exception(e, "invoice status change")
