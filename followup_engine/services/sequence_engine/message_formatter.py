"""
Message formatting and personalization functionality.

This module contains functionality for:
- Placeholder replacement with invoice data
- Rendering a step into the subject/body pair that is dispatched
- Combining English and Arabic content for bilingual steps
"""

import logging
import re
from datetime import datetime
from typing import Dict

from followup_engine.models import Invoice, SequenceStep
from followup_engine.models.sequence import StepLanguage
from followup_engine.services.compliance import RenderedContent

logger = logging.getLogger(__name__)

PLACEHOLDER_PATTERN = re.compile(r'\{\{\s*(\w+)\s*\}\}')

BILINGUAL_SEPARATOR = '\n\n---\n\n'


def _format_amount(amount) -> str:
    return f"{amount or 0:,.2f}"


def _format_date(value) -> str:
    # en-AE style: DD/MM/YYYY
    return value.strftime('%d/%m/%Y') if value else ''


def _build_variables(self, invoice: Invoice, now: datetime = None) -> Dict[str, str]:
    """Map placeholder names to invoice values."""
    now = now or datetime.utcnow()
    company = invoice.company
    return {
        'invoiceNumber': invoice.number or '',
        'customerName': invoice.customer_name or 'Valued Customer',
        'invoiceAmount': _format_amount(invoice.amount),
        'outstandingAmount': _format_amount(invoice.outstanding_amount),
        'currency': invoice.currency or '',
        'dueDate': _format_date(invoice.due_date),
        'companyName': company.name if company else '',
        'daysPastDue': str(invoice.days_overdue(now)),
        'currentDate': _format_date(now),
        'supportEmail': (company.support_email if company else None) or '',
        'supportPhone': (company.support_phone if company else None) or '',
    }


def _format_message(self, template: str, variables: Dict[str, str]) -> str:
    """Replace ``{{name}}`` placeholders; unknown names are left in place for the compliance gate to flag."""
    if not template:
        return ''

    def replace(match):
        key = match.group(1)
        if key in variables:
            return str(variables[key])
        logger.warning(f"Unknown placeholder '{{{{{key}}}}}' left unresolved")
        return match.group(0)

    return PLACEHOLDER_PATTERN.sub(replace, template)


def _render_step(self, step: SequenceStep, invoice: Invoice, now: datetime = None) -> RenderedContent:
    """Render the English and Arabic parts of a step for an invoice."""
    variables = self._build_variables(invoice, now)
    return RenderedContent(
        subject=self._format_message(step.subject or '', variables),
        body=self._format_message(step.content or '', variables),
        subject_ar=self._format_message(step.subject_ar, variables) if step.subject_ar else None,
        body_ar=self._format_message(step.content_ar, variables) if step.content_ar else None,
    )


def _compose_outbound(self, step: SequenceStep, rendered: RenderedContent):
    """Return the (subject, body) actually sent for the step's language."""
    if step.language == StepLanguage.ARABIC:
        return rendered.subject_ar or '', rendered.body_ar or ''
    if step.language == StepLanguage.BOTH:
        subject = f"{rendered.subject} | {rendered.subject_ar}" if rendered.subject_ar else rendered.subject
        body = rendered.body
        if rendered.body_ar:
            body = f"{rendered.body}{BILINGUAL_SEPARATOR}{rendered.body_ar}"
        return subject, body
    return rendered.subject, rendered.body
