"""
Dispatch services package.

This package contains the adapters that deliver rendered steps:
- base.py: DispatchResult, the Dispatcher contract and backend selection
- resend_dispatcher.py: E-mail delivery through the Resend API
- http_dispatcher.py: Delivery through a generic HTTP messaging endpoint
"""

from .base import Dispatcher, DispatchResult, LogDispatcher, get_dispatcher

__all__ = ['Dispatcher', 'DispatchResult', 'LogDispatcher', 'get_dispatcher']
