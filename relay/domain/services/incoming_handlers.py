"""
Incoming Handlers - registry of processing callbacks for inbound webhook sources.

Business code registers one async handler per source:

    @register_incoming_handler("stripe")
    async def handle_stripe(event: IncomingWebhookEvent) -> None:
        ...

The handler runs inside the ``incoming`` Celery queue after the event was
verified and deduplicated. Raising marks the event ``error``.
"""
from __future__ import annotations

from typing import Awaitable, Callable

from relay.core.logging import get_logger
from relay.db.models.webhook_event import IncomingWebhookEvent

logger = get_logger(__name__)

IncomingHandler = Callable[[IncomingWebhookEvent], Awaitable[None]]

_handlers: dict[str, IncomingHandler] = {}


def register_incoming_handler(source: str) -> Callable[[IncomingHandler], IncomingHandler]:
    def decorator(func: IncomingHandler) -> IncomingHandler:
        if source in _handlers and _handlers[source] is not func:
            logger.warning(
                "Replacing incoming webhook handler",
                extra_data={"source": source, "handler": func.__qualname__},
            )
        _handlers[source] = func
        return func
    return decorator


def get_incoming_handler(source: str) -> IncomingHandler | None:
    return _handlers.get(source)


def unregister_incoming_handler(source: str) -> None:
    _handlers.pop(source, None)
