# Import db from extensions to use the same instance
from followup_engine.extensions import db

# Import all models to ensure they are registered with SQLAlchemy
from followup_engine.models.company import Company
from followup_engine.models.invoice import Invoice, InvoiceStatus
from followup_engine.models.sequence import Sequence, SequenceStep
from followup_engine.models.execution import Execution, ExecutionStatus
from followup_engine.models.step_log import StepLog, DeliveryStatus
from followup_engine.models.event import Event
from followup_engine.models.engagement_event import EngagementEvent
from followup_engine.models.email_suppression import EmailSuppression

__all__ = [
    'db', 'Company', 'Invoice', 'InvoiceStatus', 'Sequence', 'SequenceStep', 'Execution',
    'ExecutionStatus', 'StepLog', 'DeliveryStatus', 'Event', 'EngagementEvent', 'EmailSuppression'
]
