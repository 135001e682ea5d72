"""
Exception types raised by the follow-up engine.

Every exception carries an error ``code`` understood by
``followup_engine.utils.error_handling`` so route handlers can turn it into a
standardized error response.
"""


class FollowUpError(Exception):
    """Base exception for follow-up engine errors."""
    code = 'INTERNAL_ERROR'

    def __init__(self, message, details=None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ValidationError(FollowUpError):
    """Invalid input: malformed step, trigger condition or request payload."""
    code = 'VALIDATION_ERROR'


class CalendarConfigError(ValidationError):
    """Business window configuration that can never produce a valid instant."""
    code = 'INVALID_CALENDAR'


class SequenceNotFoundError(FollowUpError):
    code = 'NOT_FOUND'

    def __init__(self, sequence_id):
        super().__init__(f"Sequence not found with id: {sequence_id}", {'sequence_id': sequence_id})
        self.sequence_id = sequence_id


class InvoiceNotFoundError(FollowUpError):
    code = 'NOT_FOUND'

    def __init__(self, invoice_id):
        super().__init__(f"Invoice not found with id: {invoice_id}", {'invoice_id': invoice_id})
        self.invoice_id = invoice_id


class SequenceInactiveError(FollowUpError):
    code = 'SEQUENCE_NOT_ACTIVE'

    def __init__(self, sequence_id):
        super().__init__(f"Sequence {sequence_id} is not active", {'sequence_id': sequence_id})
        self.sequence_id = sequence_id


class ConflictError(FollowUpError):
    """A live execution already exists for the (sequence, invoice) pair."""
    code = 'EXECUTION_ALREADY_ACTIVE'

    def __init__(self, existing_execution_id, message=None):
        super().__init__(
            message or 'Sequence already active for this invoice',
            {'existing_execution_id': existing_execution_id}
        )
        self.existing_execution_id = existing_execution_id


class IneligibleInvoiceError(FollowUpError):
    code = 'INVOICE_NOT_ELIGIBLE'

    def __init__(self, invoice_id, reason):
        super().__init__(f"Invoice {invoice_id} is not eligible: {reason}", {'invoice_id': invoice_id, 'reason': reason})
        self.invoice_id = invoice_id
        self.reason = reason


class ComplianceRejection(FollowUpError):
    """Rendered step content failed the compliance gate."""
    code = 'COMPLIANCE_REJECTED'

    def __init__(self, issues, score=None):
        super().__init__('Content failed compliance checks', {'issues': list(issues), 'score': score})
        self.issues = list(issues)
        self.score = score


class DispatchTransientError(FollowUpError):
    """Dispatch failed in a way that may succeed on retry."""
    code = 'EXTERNAL_API_ERROR'


class DispatchPermanentError(FollowUpError):
    """Dispatch failed and retrying will not help (bad recipient, rejected payload)."""
    code = 'EXTERNAL_API_ERROR'


class SchedulerConflict(FollowUpError):
    """Another worker changed or leased the execution first."""
    code = 'CONFLICT'


class CompanyNotFoundError(FollowUpError):
    code = 'NOT_FOUND'

    def __init__(self, company_id):
        super().__init__(f"Company not found with id: {company_id}", {'company_id': company_id})
        self.company_id = company_id


class DuplicateSequenceError(FollowUpError):
    code = 'CONFLICT'

    def __init__(self, name):
        super().__init__(f"A sequence named '{name}' already exists for this company", {'name': name})
        self.name = name
