"""
Dispatch contract shared by all delivery backends.

``send`` receives a deterministic dispatch token for the (execution, step)
pair. Backends forward it to the provider as an idempotency key so a retried
send of the same step is recognised downstream.
"""

import logging
import uuid
from dataclasses import dataclass
from typing import Optional

logger = logging.getLogger(__name__)


@dataclass
class DispatchResult:
    dispatch_ref: Optional[str] = None
    error: Optional[str] = None
    retryable: bool = False
    # False when the send was cancelled before it reached the provider
    attempted: bool = True

    @property
    def success(self):
        return self.dispatch_ref is not None

    @classmethod
    def sent(cls, dispatch_ref):
        return cls(dispatch_ref=str(dispatch_ref))

    @classmethod
    def failed(cls, error, retryable, attempted=True):
        return cls(error=str(error), retryable=retryable, attempted=attempted)


class Dispatcher:
    """Base class for delivery backends."""
    name = 'base'

    def send(self, dispatch_token: str, recipient: str, subject: str, body: str, language: str) -> DispatchResult:
        raise NotImplementedError


class LogDispatcher(Dispatcher):
    """Development backend: logs the message and reports it as sent."""
    name = 'log'

    def send(self, dispatch_token, recipient, subject, body, language):
        dispatch_ref = f"log-{uuid.uuid5(uuid.NAMESPACE_URL, dispatch_token)}"
        logger.info(f"[log dispatch] token={dispatch_token} to={recipient} language={language} subject='{subject}'")
        return DispatchResult.sent(dispatch_ref)


def get_dispatcher(config) -> Dispatcher:
    """Build the dispatcher selected by ``DISPATCH_BACKEND``."""
    backend = (config.get('DISPATCH_BACKEND') or 'log').lower()

    if backend == 'resend':
        from .resend_dispatcher import ResendDispatcher
        return ResendDispatcher(
            api_key=config.get('RESEND_API_KEY'),
            from_email=config.get('DISPATCH_FROM_EMAIL')
        )
    if backend == 'http':
        from .http_dispatcher import HttpDispatcher
        return HttpDispatcher(
            url=config.get('DISPATCH_HTTP_URL'),
            token=config.get('DISPATCH_HTTP_TOKEN'),
            timeout=config.get('DISPATCH_TIMEOUT_SECONDS', 30)
        )
    if backend == 'log':
        return LogDispatcher()

    raise ValueError(f"Unknown DISPATCH_BACKEND '{backend}'")
