import inspect
import logging
from collections import defaultdict

logger = logging.getLogger(__name__)

# Event names emitted after ledger / settings writes commit
SETTINGS_CHANGED = "settings.changed"
WALLET_CHANGED = "wallet.changed"
ORDER_PROFITS_CHANGED = "order.profits_changed"
ORDER_CHANGED = "order.changed"
PRODUCTS_PRICES_CHANGED = "products.prices_changed"

_subscribers = defaultdict(list)


def subscribe(event: str, handler) -> None:
    if handler not in _subscribers[event]:
        _subscribers[event].append(handler)


def unsubscribe_all() -> None:
    _subscribers.clear()


async def emit(event: str, **payload) -> None:
    """
    Deliver an event to its subscribers.
    Subscribers react to committed state; a failing subscriber is logged and
    never fails the ledger operation that emitted the event.
    """
    for handler in list(_subscribers.get(event, [])):
        try:
            result = handler(**payload)
            if inspect.isawaitable(result):
                await result
        except Exception:
            logger.exception("EVENT_HANDLER_ERROR event=%s handler=%s", event, getattr(handler, "__name__", handler))
