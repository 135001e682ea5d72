import html
import logging

import requests
import resend
from resend.exceptions import ResendError

from .base import Dispatcher, DispatchResult

logger = logging.getLogger(__name__)

RETRYABLE_STATUS_CODES = {408, 409, 429}


def _status_code(error):
    code = getattr(error, 'code', None)
    try:
        return int(code)
    except (TypeError, ValueError):
        return None


def _to_html(body: str, language: str) -> str:
    paragraphs = [html.escape(p).replace('\n', '<br>') for p in body.split('\n\n')]
    direction = ' dir="rtl"' if language == 'ARABIC' else ''
    return f"<div{direction}>" + ''.join(f"<p>{p}</p>" for p in paragraphs) + "</div>"


class ResendDispatcher(Dispatcher):
    """Send follow-up e-mails via Resend."""
    name = 'resend'

    def __init__(self, api_key=None, from_email=None):
        self.from_email = from_email
        if api_key:
            resend.api_key = api_key
            logger.info("Resend API key configured")
        else:
            logger.warning("No Resend API key found - dispatches will fail")

    def send(self, dispatch_token, recipient, subject, body, language):
        try:
            response = resend.Emails.send({
                "from": self.from_email,
                "to": [recipient],
                "subject": subject,
                "text": body,
                "html": _to_html(body, language),
                "headers": {"X-Entity-Ref-ID": dispatch_token},
                "tags": [{"name": "dispatch_token", "value": dispatch_token}]
            })
        except ResendError as e:
            status = _status_code(e)
            retryable = status is None or status >= 500 or status in RETRYABLE_STATUS_CODES
            logger.error(f"Resend rejected dispatch {dispatch_token} (status {status}): {str(e)}")
            return DispatchResult.failed(f"resend error {status}: {str(e)}", retryable=retryable)
        except requests.exceptions.RequestException as e:
            logger.error(f"Resend request failed for dispatch {dispatch_token}: {str(e)}")
            return DispatchResult.failed(f"resend request failed: {str(e)}", retryable=True)

        message_id = response.get('id') if response else None
        if not message_id:
            logger.error(f"Resend returned no message id for dispatch {dispatch_token}: {response}")
            return DispatchResult.failed("resend returned no message id", retryable=True)

        logger.info(f"Dispatch {dispatch_token} sent to {recipient}: {message_id}")
        return DispatchResult.sent(message_id)
