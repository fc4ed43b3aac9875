import logging
from collections import defaultdict
from typing import Callable

logger = logging.getLogger(__name__)

PAYMENT_SUCCEEDED = "payment.succeeded"
PAYMENT_FAILED = "payment.failed"
PAYMENT_CANCELLED = "payment.cancelled"
PAYMENT_REFUNDED = "payment.refunded"

Listener = Callable[[str, dict], None]

_listeners: dict[str, list[Listener]] = defaultdict(list)


def subscribe(event_name: str, listener: Listener) -> None:
    if listener not in _listeners[event_name]:
        _listeners[event_name].append(listener)


def unsubscribe(event_name: str, listener: Listener) -> None:
    if listener in _listeners.get(event_name, []):
        _listeners[event_name].remove(listener)


def clear() -> None:
    _listeners.clear()


def emit(event_name: str, payload: dict) -> None:
    """Notify listeners; a failing listener never breaks the payment flow."""
    for listener in list(_listeners.get(event_name, [])):
        try:
            listener(event_name, payload)
        except Exception:
            logger.exception("Listener %r failed for %s", listener, event_name)
