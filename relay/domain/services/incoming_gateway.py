"""
Incoming Webhook Gateway - verify, deduplicate, hand off.

    receive → signature ok? → JSON ok? → INSERT (source, event_id) received
              → enqueue processing        → {"status": "accepted"}
              unique violation            → {"status": "duplicate"} (no enqueue)

Processing runs in a worker:

    received → processing (CAS) → handler → processed | error

Nothing is persisted before the signature is verified. ``error`` rows are
never retried automatically; an operator calls ``retry_event``.
"""
from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, List, Mapping

from sqlalchemy import and_, delete, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from relay.core.clock import utcnow
from relay.core.config import IncomingSourceConfig, settings
from relay.core.exceptions import (
    IncomingEventNotFoundError,
    IncomingEventStatusError,
    SignatureError,
    UnknownWebhookSourceError,
    ValidationException,
)
from relay.core.logging import get_logger
from relay.core.signatures import verify_with_scheme
from relay.db.models.webhook_event import IncomingEventStatus, IncomingWebhookEvent
from relay.domain.services.incoming_handlers import get_incoming_handler

logger = get_logger(__name__)

# (source, event_id) → None; normally publishes process_incoming_webhook_event
Enqueue = Callable[[str, str], Awaitable[None] | None]


@dataclass(frozen=True)
class ReceiveResult:
    source: str
    event_id: str
    duplicate: bool

    def to_ack(self) -> dict[str, str]:
        return {
            "status": "duplicate" if self.duplicate else "accepted",
            "event_id": self.event_id,
        }


def _header(headers: Mapping[str, str], name: str) -> str | None:
    """Case-insensitive lookup that also works for plain dicts"""
    value = headers.get(name)
    if value is not None:
        return value
    lowered = name.lower()
    for key, candidate in headers.items():
        if key.lower() == lowered:
            return candidate
    return None


def _default_enqueue(source: str, event_id: str) -> None:
    from relay.workers.tasks import enqueue_incoming_event

    enqueue_incoming_event(source, event_id)


class IncomingWebhookGateway:
    """Inbound webhook verification and dedup on top of webhook_events"""

    def __init__(
        self,
        db: AsyncSession,
        *,
        sources: Mapping[str, IncomingSourceConfig] | None = None,
        enqueue: Enqueue | None = None,
    ):
        self.db = db
        self.sources = settings.INCOMING_WEBHOOK_SOURCES if sources is None else sources
        self.enqueue = enqueue or _default_enqueue

    async def _enqueue(self, source: str, event_id: str) -> bool:
        try:
            result = self.enqueue(source, event_id)
            if result is not None:
                await result
        except Exception as exc:
            # האירוע כבר שמור: requeue_stuck יאסוף אותו בהמשך
            logger.error(
                "Failed to enqueue incoming event processing",
                extra_data={"source": source, "event_id": event_id, "error": str(exc)},
                exc_info=True,
            )
            return False
        return True

    def _verify(self, source: str, config: IncomingSourceConfig, raw_body: bytes, headers: Mapping[str, str]) -> None:
        try:
            verify_with_scheme(
                config.scheme,
                _header(headers, config.signature_header),
                raw_body,
                config.secret,
                tolerance=(
                    config.tolerance_seconds
                    if config.tolerance_seconds is not None
                    else settings.SIGNATURE_TOLERANCE_SECONDS
                ),
            )
        except SignatureError as exc:
            logger.warning(
                "Rejected inbound webhook: bad signature",
                extra_data={"source": source, "reason": exc.reason},
            )
            raise SignatureError(exc.reason, source=source) from None

    @staticmethod
    def _parse(raw_body: bytes, config: IncomingSourceConfig) -> tuple[dict[str, Any], str, str | None]:
        try:
            payload = json.loads(raw_body)
        except (ValueError, UnicodeDecodeError):
            raise ValidationException("Request body is not valid JSON", field="body") from None
        if not isinstance(payload, dict):
            raise ValidationException("Request body must be a JSON object", field="body")

        event_id = payload.get(config.event_id_field)
        if event_id is None or str(event_id) == "":
            raise ValidationException(
                f"Missing event id field '{config.event_id_field}'",
                field=config.event_id_field,
            )
        event_type = payload.get(config.event_type_field)
        return payload, str(event_id), str(event_type) if event_type is not None else None

    async def receive(
        self,
        source: str,
        raw_body: bytes,
        headers: Mapping[str, str],
        now: datetime | None = None,
    ) -> ReceiveResult:
        """
        Authenticate and record an inbound webhook.

        Raises:
            UnknownWebhookSourceError: no configuration for ``source`` (404)
            SignatureError: signature missing, wrong or outside tolerance (400)
            ValidationException: body is not a JSON object or has no event id (400)
        """
        config = self.sources.get(source)
        if config is None:
            raise UnknownWebhookSourceError(source)

        self._verify(source, config, raw_body, headers)
        payload, event_id, event_type = self._parse(raw_body, config)

        now = now or utcnow()
        try:
            async with self.db.begin_nested():
                self.db.add(IncomingWebhookEvent(
                    source=source,
                    event_id=event_id,
                    event_type=event_type,
                    payload=payload,
                    status=IncomingEventStatus.RECEIVED,
                    attempts=0,
                    received_at=now,
                    updated_at=now,
                ))
            await self.db.commit()
        except IntegrityError:
            await self.db.rollback()
            logger.info(
                "Duplicate inbound webhook acknowledged",
                extra_data={"source": source, "event_id": event_id},
            )
            return ReceiveResult(source=source, event_id=event_id, duplicate=True)

        logger.info(
            "Inbound webhook accepted",
            extra_data={"source": source, "event_id": event_id, "event_type": event_type},
        )
        await self._enqueue(source, event_id)
        return ReceiveResult(source=source, event_id=event_id, duplicate=False)

    async def get_event(self, source: str, event_id: str) -> IncomingWebhookEvent:
        result = await self.db.execute(
            select(IncomingWebhookEvent)
            .where(
                IncomingWebhookEvent.source == source,
                IncomingWebhookEvent.event_id == event_id,
            )
            .execution_options(populate_existing=True)
        )
        event = result.scalar_one_or_none()
        if not event:
            raise IncomingEventNotFoundError(source, event_id)
        return event

    async def list_events(
        self,
        status: IncomingEventStatus | None = None,
        source: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[IncomingWebhookEvent]:
        query = select(IncomingWebhookEvent).order_by(IncomingWebhookEvent.received_at.desc())
        if status is not None:
            query = query.where(IncomingWebhookEvent.status == status)
        if source is not None:
            query = query.where(IncomingWebhookEvent.source == source)
        result = await self.db.execute(query.limit(limit).offset(offset))
        return list(result.scalars().all())

    async def retry_event(self, source: str, event_id: str, now: datetime | None = None) -> IncomingWebhookEvent:
        """Operator action: error → received, then enqueue again"""
        event = await self.get_event(source, event_id)
        result = await self.db.execute(
            update(IncomingWebhookEvent)
            .where(
                IncomingWebhookEvent.source == source,
                IncomingWebhookEvent.event_id == event_id,
                IncomingWebhookEvent.status == IncomingEventStatus.ERROR,
            )
            .values(status=IncomingEventStatus.RECEIVED, updated_at=now or utcnow())
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        if result.rowcount != 1:
            raise IncomingEventStatusError(source, event_id, event.status.value)

        logger.info("Incoming event retry requested", extra_data={"source": source, "event_id": event_id})
        await self._enqueue(source, event_id)
        return await self.get_event(source, event_id)

    async def requeue_stuck(self, now: datetime | None = None, older_than: int | None = None) -> int:
        """
        Hand events stuck in received/processing back to the queue.

        ``received`` rows whose message was lost, and ``processing`` rows
        whose worker died, both show up as not updated for ``older_than``
        seconds. Each row is touched by CAS on updated_at before enqueueing,
        so two overlapping runs don't enqueue it twice.
        """
        now = now or utcnow()
        threshold = now - timedelta(
            seconds=older_than if older_than is not None else settings.INCOMING_EVENT_STUCK_SECONDS
        )
        result = await self.db.execute(
            select(
                IncomingWebhookEvent.source,
                IncomingWebhookEvent.event_id,
                IncomingWebhookEvent.status,
                IncomingWebhookEvent.updated_at,
            ).where(
                IncomingWebhookEvent.status.in_(
                    [IncomingEventStatus.RECEIVED, IncomingEventStatus.PROCESSING]
                ),
                IncomingWebhookEvent.updated_at < threshold,
            )
        )

        requeued = 0
        for source, event_id, status, updated_at in result.all():
            touched = await self.db.execute(
                update(IncomingWebhookEvent)
                .where(
                    IncomingWebhookEvent.source == source,
                    IncomingWebhookEvent.event_id == event_id,
                    IncomingWebhookEvent.status == status,
                    IncomingWebhookEvent.updated_at == updated_at,
                )
                .values(status=IncomingEventStatus.RECEIVED, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            await self.db.commit()
            if touched.rowcount != 1:
                continue
            if await self._enqueue(source, event_id):
                requeued += 1
                logger.warning(
                    "Requeued stuck incoming event",
                    extra_data={"source": source, "event_id": event_id, "previous_status": status.value},
                )
        return requeued

    async def cleanup_processed(self, now: datetime | None = None, retention_days: int | None = None) -> int:
        """Delete processed events older than the retention period"""
        cutoff = (now or utcnow()) - timedelta(
            days=retention_days if retention_days is not None else settings.INCOMING_EVENT_RETENTION_DAYS
        )
        result = await self.db.execute(
            delete(IncomingWebhookEvent)
            .where(
                and_(
                    IncomingWebhookEvent.status == IncomingEventStatus.PROCESSED,
                    or_(
                        IncomingWebhookEvent.processed_at < cutoff,
                        and_(
                            IncomingWebhookEvent.processed_at.is_(None),
                            IncomingWebhookEvent.updated_at < cutoff,
                        ),
                    ),
                )
            )
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        return result.rowcount


async def process_incoming_event(
    db: AsyncSession,
    source: str,
    event_id: str,
    now: datetime | None = None,
) -> IncomingEventStatus | None:
    """
    Run the registered handler for one received event.

    Returns the final status, or None if the event was not in ``received``
    (already processed, or being processed by another worker).
    """
    started = now or utcnow()
    claimed = await db.execute(
        update(IncomingWebhookEvent)
        .where(
            IncomingWebhookEvent.source == source,
            IncomingWebhookEvent.event_id == event_id,
            IncomingWebhookEvent.status == IncomingEventStatus.RECEIVED,
        )
        .values(
            status=IncomingEventStatus.PROCESSING,
            attempts=IncomingWebhookEvent.attempts + 1,
            updated_at=started,
        )
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    if claimed.rowcount != 1:
        logger.info(
            "Incoming event not in received state, skipping",
            extra_data={"source": source, "event_id": event_id},
        )
        return None

    result = await db.execute(
        select(IncomingWebhookEvent)
        .where(
            IncomingWebhookEvent.source == source,
            IncomingWebhookEvent.event_id == event_id,
        )
        .execution_options(populate_existing=True)
    )
    event = result.scalar_one()

    handler = get_incoming_handler(source)
    error_message: str | None = None
    if handler is None:
        error_message = f"No handler registered for source '{source}'"
    else:
        try:
            await handler(event)
        except Exception as exc:
            error_message = f"{type(exc).__name__}: {exc}"
            logger.error(
                "Incoming webhook handler failed",
                extra_data={"source": source, "event_id": event_id, "error": error_message},
                exc_info=True,
            )
            await db.rollback()

    finished = utcnow() if now is None else now
    final_status = IncomingEventStatus.ERROR if error_message else IncomingEventStatus.PROCESSED
    await db.execute(
        update(IncomingWebhookEvent)
        .where(
            IncomingWebhookEvent.source == source,
            IncomingWebhookEvent.event_id == event_id,
            IncomingWebhookEvent.status == IncomingEventStatus.PROCESSING,
        )
        .values(
            status=final_status,
            error_message=error_message[:1000] if error_message else None,
            processed_at=finished if final_status is IncomingEventStatus.PROCESSED else None,
            updated_at=finished,
        )
        .execution_options(synchronize_session=False)
    )
    await db.commit()

    if final_status is IncomingEventStatus.PROCESSED:
        logger.info("Incoming event processed", extra_data={"source": source, "event_id": event_id})
    else:
        logger.warning(
            "Incoming event marked as error",
            extra_data={"source": source, "event_id": event_id, "error": error_message},
        )
    return final_status
