"""
Idempotency Service - at-most-once execution of mutating API requests.

The gate is a row in ``idempotency_keys`` per (scope, key):

    acquire  → INSERT (locked)              → Proceed(lock_token)
               row exists, other hash       → Conflict
               row completed, same hash     → Replay(cached response)
               row locked, fresh            → Locked
               row locked, stale            → CAS steal → Proceed(new token)
    complete → CAS (lock_token, locked) → completed + cached response
    release  → CAS delete (lock_token, locked)

Nothing here holds an in-process lock: every transition is a single
conditional statement against the database, so handlers on different
machines see the same outcome.
"""
from __future__ import annotations

import enum
import hashlib
import math
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from relay.core.clock import utcnow
from relay.core.config import settings
from relay.core.logging import get_logger
from relay.db.models.idempotency_key import IdempotencyRecord, IdempotencyStatus

logger = get_logger(__name__)


class AcquireOutcome(str, enum.Enum):
    PROCEED = "proceed"
    REPLAY = "replay"
    CONFLICT = "conflict"
    LOCKED = "locked"


@dataclass(frozen=True)
class CachedResponse:
    """Stored response; ``headers`` are the ones replayed verbatim (content-type, location...)"""

    status_code: int
    body: bytes
    headers: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class AcquireResult:
    outcome: AcquireOutcome
    lock_token: str | None = None
    cached_response: CachedResponse | None = None
    retry_after_seconds: int | None = None


def compute_request_hash(method: str, path: str, body: bytes | str) -> str:
    """Deterministic fingerprint of a request: sha256(METHOD \\n path \\n body)"""
    if isinstance(body, str):
        body = body.encode("utf-8")
    digest = hashlib.sha256()
    digest.update(method.upper().encode("utf-8"))
    digest.update(b"\n")
    digest.update(path.encode("utf-8"))
    digest.update(b"\n")
    digest.update(body)
    return digest.hexdigest()


def build_scope(owner_id: str, method: str, path: str) -> str:
    """Keys are unique per owner and endpoint, not globally"""
    return f"{owner_id}:{method.upper()} {path}"


class IdempotencyService:
    """
    Request-facing coordinator on top of the idempotency_keys table.

    Every public method commits before returning, so the state it reports is
    already visible to other handlers.
    """

    def __init__(
        self,
        db: AsyncSession,
        *,
        ttl_seconds: int | None = None,
        stale_seconds: int | None = None,
    ):
        self.db = db
        self.ttl = timedelta(
            seconds=ttl_seconds if ttl_seconds is not None else settings.IDEMPOTENCY_KEY_TTL_SECONDS
        )
        self.stale_after = timedelta(
            seconds=stale_seconds if stale_seconds is not None else settings.IDEMPOTENCY_LOCK_STALE_SECONDS
        )

    async def _get(self, scope: str, key: str) -> IdempotencyRecord | None:
        result = await self.db.execute(
            select(IdempotencyRecord)
            .where(IdempotencyRecord.scope == scope, IdempotencyRecord.key == key)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def _try_insert(self, key: str, scope: str, request_hash: str, now: datetime) -> str | None:
        """INSERT locked row in a savepoint; returns the lock token, None if the row exists"""
        token = uuid.uuid4().hex
        try:
            async with self.db.begin_nested():
                self.db.add(IdempotencyRecord(
                    key=key,
                    scope=scope,
                    request_hash=request_hash,
                    status=IdempotencyStatus.LOCKED,
                    lock_token=token,
                    created_at=now,
                    locked_at=now,
                    expires_at=now + self.ttl,
                ))
            await self.db.commit()
            return token
        except IntegrityError:
            await self.db.rollback()
            return None

    async def acquire(
        self,
        key: str,
        scope: str,
        request_hash: str,
        now: datetime | None = None,
    ) -> AcquireResult:
        """Decide whether the request proceeds, replays, conflicts or must wait"""
        now = now or utcnow()

        # שני סבבים: אם הרשומה פגה או נמחקה בין ה-INSERT לקריאה: מנסים שוב פעם אחת
        for _ in range(2):
            token = await self._try_insert(key, scope, request_hash, now)
            if token:
                logger.debug(
                    "Idempotency key acquired",
                    extra_data={"scope": scope, "idempotency_key": key},
                )
                return AcquireResult(AcquireOutcome.PROCEED, lock_token=token)

            record = await self._get(scope, key)
            if record is None:
                continue

            if record.expires_at <= now:
                await self.db.execute(
                    delete(IdempotencyRecord).where(
                        IdempotencyRecord.id == record.id,
                        IdempotencyRecord.expires_at <= now,
                    )
                )
                await self.db.commit()
                continue

            return await self._resolve_existing(record, request_hash, now)

        # התנגשות חוזרת עם handler אחר: הלקוח ינסה שוב
        return AcquireResult(
            AcquireOutcome.LOCKED,
            retry_after_seconds=max(1, int(self.stale_after.total_seconds())),
        )

    async def _resolve_existing(
        self,
        record: IdempotencyRecord,
        request_hash: str,
        now: datetime,
    ) -> AcquireResult:
        if record.request_hash != request_hash:
            logger.warning(
                "Idempotency key reused with different request",
                extra_data={"scope": record.scope, "idempotency_key": record.key},
            )
            return AcquireResult(AcquireOutcome.CONFLICT)

        if record.status == IdempotencyStatus.COMPLETED:
            logger.info(
                "Replaying cached response",
                extra_data={
                    "scope": record.scope,
                    "idempotency_key": record.key,
                    "response_status": record.response_status,
                },
            )
            return AcquireResult(
                AcquireOutcome.REPLAY,
                cached_response=CachedResponse(
                    status_code=record.response_status,
                    body=record.response_body or b"",
                    headers=dict(record.response_headers or {}),
                ),
            )

        locked_at = record.locked_at or record.created_at
        age = now - locked_at
        if age < self.stale_after:
            remaining = (self.stale_after - age).total_seconds()
            return AcquireResult(
                AcquireOutcome.LOCKED,
                retry_after_seconds=max(1, math.ceil(remaining)),
            )

        # הנועל הקודם כנראה קרס: גניבה אטומית רק אם ה-token לא השתנה בינתיים
        new_token = uuid.uuid4().hex
        result = await self.db.execute(
            update(IdempotencyRecord)
            .where(
                IdempotencyRecord.id == record.id,
                IdempotencyRecord.status == IdempotencyStatus.LOCKED,
                IdempotencyRecord.lock_token == record.lock_token,
            )
            .values(lock_token=new_token, locked_at=now)
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()

        if result.rowcount == 1:
            logger.warning(
                "Reclaimed stale idempotency lock",
                extra_data={
                    "scope": record.scope,
                    "idempotency_key": record.key,
                    "locked_seconds": round(age.total_seconds(), 1),
                },
            )
            return AcquireResult(AcquireOutcome.PROCEED, lock_token=new_token)

        return AcquireResult(
            AcquireOutcome.LOCKED,
            retry_after_seconds=max(1, int(self.stale_after.total_seconds())),
        )

    async def complete(
        self,
        lock_token: str,
        response: CachedResponse,
        now: datetime | None = None,
    ) -> bool:
        """
        Store the response and mark the key completed.

        Returns False if the lock was reclaimed by another handler in the
        meantime; the new holder's record is left untouched.
        """
        result = await self.db.execute(
            update(IdempotencyRecord)
            .where(
                IdempotencyRecord.lock_token == lock_token,
                IdempotencyRecord.status == IdempotencyStatus.LOCKED,
            )
            .values(
                status=IdempotencyStatus.COMPLETED,
                response_status=response.status_code,
                response_body=response.body,
                response_headers=dict(response.headers),
                completed_at=now or utcnow(),
                lock_token=None,
            )
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()

        if result.rowcount != 1:
            logger.warning(
                "Idempotency lock lost before completion",
                extra_data={"lock_token": lock_token[:8]},
            )
            return False
        return True

    async def release(self, lock_token: str) -> bool:
        """Delete a locked record so the client can retry cleanly"""
        result = await self.db.execute(
            delete(IdempotencyRecord)
            .where(
                IdempotencyRecord.lock_token == lock_token,
                IdempotencyRecord.status == IdempotencyStatus.LOCKED,
            )
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        return result.rowcount == 1

    async def purge_expired(self, now: datetime | None = None) -> int:
        """Delete every record past expires_at, whatever its status"""
        result = await self.db.execute(
            delete(IdempotencyRecord)
            .where(IdempotencyRecord.expires_at <= (now or utcnow()))
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        return result.rowcount
