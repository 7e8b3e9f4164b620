"""
Event Types - the catalogue of business events that can be delivered to
outbound webhook endpoints, and the subscription matcher.

An endpoint either subscribes to everything (``subscribe_all``) or to an
explicit list of EventType values. All subscription checks go through
``endpoint_matches``.
"""
from __future__ import annotations

import enum
from typing import Iterable


class EventType(str, enum.Enum):
    # Billing
    INVOICE_CREATED = "invoice.created"
    INVOICE_PAID = "invoice.paid"
    INVOICE_PAYMENT_FAILED = "invoice.payment_failed"
    SUBSCRIPTION_CREATED = "subscription.created"
    SUBSCRIPTION_UPDATED = "subscription.updated"
    SUBSCRIPTION_CANCELLED = "subscription.cancelled"

    # Accounts
    USER_CREATED = "user.created"
    USER_DELETED = "user.deleted"
    ORGANIZATION_UPDATED = "organization.updated"

    # Orders
    ORDER_CREATED = "order.created"
    ORDER_UPDATED = "order.updated"
    ORDER_CANCELLED = "order.cancelled"

    # Connectivity checks sent by operators
    WEBHOOK_PING = "webhook.ping"


def parse_event_type(value: str) -> EventType:
    """Map a string to an EventType, raising ValueError for unknown types"""
    try:
        return EventType(value)
    except ValueError:
        raise ValueError(f"Unknown event type: {value!r}") from None


def parse_event_types(values: Iterable[str]) -> list[EventType]:
    """Parse and de-duplicate a subscription list, keeping the caller's order"""
    seen: dict[EventType, None] = {}
    for value in values:
        seen[parse_event_type(value)] = None
    return list(seen)


def endpoint_matches(
    subscribe_all: bool,
    subscribed_events: Iterable[str],
    event_type: EventType | str,
) -> bool:
    """True if an endpoint with this subscription should receive ``event_type``"""
    if subscribe_all:
        return True
    wanted = EventType(event_type).value
    return wanted in set(subscribed_events or ())
