import logging

import requests

from .base import Dispatcher, DispatchResult

logger = logging.getLogger(__name__)


class HttpDispatcher(Dispatcher):
    """Client for a generic HTTP messaging endpoint."""
    name = 'http'

    def __init__(self, url, token=None, timeout=30):
        self.url = url
        self.token = token
        self.timeout = timeout

        if not self.url:
            logger.warning("No DISPATCH_HTTP_URL configured")

    def _headers(self, dispatch_token):
        headers = {
            'Content-Type': 'application/json',
            'Idempotency-Key': dispatch_token,
        }
        if self.token:
            headers['Authorization'] = f"Bearer {self.token}"
        return headers

    def send(self, dispatch_token, recipient, subject, body, language):
        if not self.url:
            return DispatchResult.failed("No dispatch URL configured", retryable=False)

        payload = {
            'dispatch_token': dispatch_token,
            'recipient': recipient,
            'subject': subject,
            'body': body,
            'language': language
        }

        try:
            response = requests.post(self.url, json=payload, headers=self._headers(dispatch_token), timeout=self.timeout)
        except (requests.exceptions.Timeout, requests.exceptions.ConnectionError) as e:
            logger.error(f"Dispatch request for {dispatch_token} failed: {str(e)}")
            return DispatchResult.failed(f"request failed: {str(e)}", retryable=True)
        except requests.exceptions.RequestException as e:
            logger.error(f"Dispatch request for {dispatch_token} could not be sent: {str(e)}")
            return DispatchResult.failed(f"request error: {str(e)}", retryable=False)

        if response.status_code == 429 or response.status_code >= 500:
            logger.error(f"Dispatch endpoint returned {response.status_code} for {dispatch_token}: {response.text}")
            return DispatchResult.failed(f"HTTP {response.status_code}", retryable=True)
        if response.status_code >= 400:
            logger.error(f"Dispatch endpoint rejected {dispatch_token} with {response.status_code}: {response.text}")
            return DispatchResult.failed(f"HTTP {response.status_code}: {response.text[:200]}", retryable=False)

        try:
            data = response.json()
        except ValueError:
            data = {}
        dispatch_ref = data.get('id') or data.get('dispatch_ref') or data.get('message_id')
        if not dispatch_ref:
            logger.error(f"Dispatch endpoint returned no reference for {dispatch_token}")
            return DispatchResult.failed("no dispatch reference in response", retryable=True)

        logger.info(f"Dispatch {dispatch_token} accepted by endpoint: {dispatch_ref}")
        return DispatchResult.sent(dispatch_ref)
