"""Audit recording for gate operations.

Every recorded attempt becomes one append-only ``AuditEvent`` row. Writes are
best-effort from the caller's point of view: ``AuditRecorder.record`` never
raises, and anything that cannot be persisted is emitted as JSON on the
``tenantguard.audit.fallback`` logger and counted in ``audit_write_failures``.

Rows are chained per tenant with an HMAC so that edits or deletions made
directly in storage are detectable with ``verify_chain``.
"""

from __future__ import annotations

import asyncio
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from functools import lru_cache
import hashlib
import hmac
import json
import logging
from typing import Any, Callable, Iterable, Mapping, Sequence
from uuid import uuid4

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from tenantguard.core.config import csv_values, get_settings
from tenantguard.core.errors import AuditWriteFailure
from tenantguard.domain.models import AuditEvent
from tenantguard.domain.principal import Principal
from tenantguard.domain.resources import get_resource
from tenantguard.persistence.db import SessionLocal
from tenantguard.persistence.repos import audit as audit_repo
from tenantguard.services.telemetry import increment_counter


logger = logging.getLogger(__name__)
fallback_logger = logging.getLogger("tenantguard.audit.fallback")

_SENSITIVE_KEY_PATTERNS = ["api_key", "authorization", "token", "secret", "password"]
_REDACTED_VALUE = "[REDACTED]"

READ_ACTIONS = frozenset({"list", "read"})
DECISION_ALLOWED = "allowed"
DECISION_DENIED = "denied"
DECISION_CANCELLED = "cancelled"
OUTCOME_SUCCESS = "success"
OUTCOME_FAILURE = "failure"

FAILURE_COUNTER = "audit_write_failures"


def _is_sensitive_key(key: str) -> bool:
    lowered = key.lower()
    return any(pattern in lowered for pattern in _SENSITIVE_KEY_PATTERNS)


def redact_snapshot(
    value: Any,
    *,
    resource_type: str | None = None,
    extra_fields: Iterable[str] = (),
) -> Any:
    # Apply global, per-resource and policy denylists plus sensitive key fragments.
    denylist = csv_values(get_settings().audit_redact_fields)
    resource = get_resource(resource_type) if resource_type else None
    if resource is not None:
        denylist |= set(resource.redact_fields)
    denylist |= set(extra_fields)
    return _redact(value, denylist)


def _redact(value: Any, denylist: set[str]) -> Any:
    if isinstance(value, dict):
        sanitized: dict[str, Any] = {}
        for raw_key, raw_value in value.items():
            key = str(raw_key)
            if key in denylist or _is_sensitive_key(key):
                sanitized[key] = _REDACTED_VALUE
            else:
                sanitized[key] = _redact(raw_value, denylist)
        return sanitized
    if isinstance(value, list):
        return [_redact(item, denylist) for item in value]
    return value


def should_audit(*, action: str, decision: str, resource_type: str, unrestricted: bool) -> bool:
    # Writes, denials and unrestricted operations always; reads only for sensitive types.
    if unrestricted or decision != DECISION_ALLOWED:
        return True
    if action in READ_ACTIONS:
        return resource_type in csv_values(get_settings().audit_sensitive_read_types)
    return True


def _timestamp(value: datetime) -> str:
    # SQLite drops tzinfo on read; hash a UTC rendering that survives the round trip.
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


@dataclass(frozen=True)
class AuditRecord:
    resource_type: str
    action: str
    decision: str
    outcome: str
    tenant_id: str | None = None
    principal_id: str | None = None
    principal_role: str | None = None
    resource_id: str | None = None
    reason: str | None = None
    before: dict[str, Any] | None = None
    after: dict[str, Any] | None = None
    request_id: str | None = None
    event_id: str = field(default_factory=lambda: uuid4().hex)
    occurred_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def hash_payload(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["occurred_at"] = _timestamp(self.occurred_at)
        return payload

    def to_json(self) -> str:
        return json.dumps(self.hash_payload(), sort_keys=True, default=str)


def _row_payload(row: AuditEvent) -> dict[str, Any]:
    return {
        "resource_type": row.resource_type,
        "action": row.action,
        "decision": row.decision,
        "outcome": row.outcome,
        "tenant_id": row.tenant_id,
        "principal_id": row.principal_id,
        "principal_role": row.principal_role,
        "resource_id": row.resource_id,
        "reason": row.reason,
        "before": row.before_json,
        "after": row.after_json,
        "request_id": row.request_id,
        "event_id": row.event_id,
        "occurred_at": _timestamp(row.occurred_at),
    }


def compute_event_hash(key: str, prev_hash: str | None, payload: Mapping[str, Any]) -> str:
    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    message = (prev_hash or "") + canonical
    return hmac.new(key.encode("utf-8"), message.encode("utf-8"), hashlib.sha256).hexdigest()


@dataclass(frozen=True)
class ChainVerification:
    ok: bool
    checked: int
    broken_event_id: str | None = None


def verify_chain(events: Sequence[AuditEvent], *, key: str | None = None) -> ChainVerification:
    """Check one tenant's events, oldest first, and report the first broken link."""
    signing_key = key or get_settings().audit_signing_key
    prev_hash: str | None = None
    for index, row in enumerate(events):
        expected = compute_event_hash(signing_key, prev_hash, _row_payload(row))
        if row.prev_hash != prev_hash or not hmac.compare_digest(expected, row.event_hash):
            return ChainVerification(ok=False, checked=index, broken_event_id=row.event_id)
        prev_hash = row.event_hash
    return ChainVerification(ok=True, checked=len(events))


class AuditRecorder:
    def __init__(
        self,
        *,
        session_factory: Callable[[], AsyncSession] | None = None,
        mode: str | None = None,
        signing_key: str | None = None,
        queue_max: int | None = None,
        batch_size: int | None = None,
        flush_interval_s: float | None = None,
    ) -> None:
        settings = get_settings()
        self._session_factory = session_factory or SessionLocal
        self._mode = (mode or settings.audit_execution_mode).lower()
        if self._mode not in {"queue", "inline"}:
            raise ValueError(f"Unsupported audit execution mode: {self._mode}")
        self._signing_key = signing_key or settings.audit_signing_key
        self._queue_max = queue_max if queue_max is not None else settings.audit_queue_max
        self._batch_size = max(1, batch_size or settings.audit_batch_size)
        self._flush_interval_s = (
            flush_interval_s if flush_interval_s is not None else settings.audit_flush_interval_s
        )
        self._queue: asyncio.Queue[AuditRecord] | None = None
        self._worker: asyncio.Task[None] | None = None
        self._stopped = False
        # Chain heads are read and extended one batch at a time.
        self._write_lock = asyncio.Lock()

    @property
    def mode(self) -> str:
        return self._mode

    @property
    def running(self) -> bool:
        return self._worker is not None and not self._worker.done()

    async def start(self) -> None:
        if self._mode != "queue" or self.running:
            return
        self._stopped = False
        self._queue = asyncio.Queue(maxsize=self._queue_max)
        self._worker = asyncio.create_task(self._run(self._queue), name="tenantguard-audit-writer")
        logger.info("audit_recorder_started mode=%s", self._mode)

    async def flush(self) -> None:
        # Wait until everything enqueued so far is written or handed to the fallback sink.
        if self._queue is not None and self.running:
            await self._queue.join()

    async def stop(self) -> None:
        self._stopped = True
        if self._worker is None:
            return
        await self.flush()
        self._worker.cancel()
        try:
            await self._worker
        except asyncio.CancelledError:
            pass
        self._worker = None
        logger.info("audit_recorder_stopped")

    async def record(
        self,
        *,
        resource_type: str,
        action: str,
        decision: str,
        outcome: str,
        principal: Principal | None = None,
        principal_id: str | None = None,
        tenant_id: str | None = None,
        resource_id: str | None = None,
        reason: str | None = None,
        before: Mapping[str, Any] | None = None,
        after: Mapping[str, Any] | None = None,
        redact_fields: Iterable[str] = (),
        request_id: str | None = None,
    ) -> None:
        try:
            if tenant_id is None and principal is not None and not principal.is_service:
                tenant_id = principal.tenant_id
            record = AuditRecord(
                resource_type=resource_type,
                action=action,
                decision=decision,
                outcome=outcome,
                tenant_id=tenant_id,
                principal_id=principal.user_id if principal is not None else principal_id,
                principal_role=principal.role.value if principal is not None else None,
                resource_id=resource_id,
                reason=reason,
                before=_snapshot(before, resource_type, redact_fields),
                after=_snapshot(after, resource_type, redact_fields),
                request_id=request_id,
            )
        except Exception as exc:
            logger.error("audit_record_build_failed resource_type=%s action=%s", resource_type, action, exc_info=exc)
            increment_counter(FAILURE_COUNTER)
            return
        await self.submit(record)

    async def submit(self, record: AuditRecord) -> None:
        if self._mode == "inline":
            await self._write([record])
            return
        if self._stopped:
            self._fallback([record], "recorder_stopped")
            return
        if not self.running:
            await self.start()
        queue = self._queue
        if queue is None:
            self._fallback([record], "recorder_not_started")
            return
        try:
            queue.put_nowait(record)
        except asyncio.QueueFull:
            self._fallback([record], "queue_full")

    async def _run(self, queue: asyncio.Queue[AuditRecord]) -> None:
        loop = asyncio.get_running_loop()
        while True:
            batch = [await queue.get()]
            deadline = loop.time() + self._flush_interval_s
            while len(batch) < self._batch_size:
                timeout = deadline - loop.time()
                if timeout <= 0:
                    break
                try:
                    batch.append(await asyncio.wait_for(queue.get(), timeout))
                except asyncio.TimeoutError:
                    break
            try:
                await self._write(batch)
            finally:
                for _ in batch:
                    queue.task_done()

    async def _write(self, records: list[AuditRecord]) -> None:
        try:
            async with self._write_lock:
                async with self._session_factory() as session:
                    try:
                        heads: dict[str | None, str | None] = {}
                        rows: list[AuditEvent] = []
                        for record in records:
                            if record.tenant_id not in heads:
                                heads[record.tenant_id] = await audit_repo.last_hash_for_tenant(
                                    session, tenant_id=record.tenant_id
                                )
                            prev_hash = heads[record.tenant_id]
                            event_hash = compute_event_hash(
                                self._signing_key, prev_hash, record.hash_payload()
                            )
                            rows.append(_to_row(record, prev_hash, event_hash))
                            heads[record.tenant_id] = event_hash
                        audit_repo.append_events(session, rows)
                        await session.commit()
                    except SQLAlchemyError as exc:
                        await session.rollback()
                        raise AuditWriteFailure(f"{len(records)} audit events were not persisted") from exc
                    except BaseException:
                        await session.rollback()
                        raise
        except asyncio.CancelledError:
            self._fallback(records, "cancelled")
            raise
        except (AuditWriteFailure, SQLAlchemyError) as exc:
            logger.warning("audit_event_write_failed events=%s", len(records), exc_info=exc)
            self._fallback(records, "write_failed")
        except Exception as exc:
            logger.error("audit_event_write_error events=%s", len(records), exc_info=exc)
            self._fallback(records, "unexpected_error")

    def _fallback(self, records: Iterable[AuditRecord], cause: str) -> None:
        for record in records:
            increment_counter(FAILURE_COUNTER)
            fallback_logger.error("%s", record.to_json(), extra={"audit_fallback_cause": cause})


def _snapshot(
    value: Mapping[str, Any] | None,
    resource_type: str,
    redact_fields: Iterable[str],
) -> dict[str, Any] | None:
    if value is None:
        return None
    return redact_snapshot(dict(value), resource_type=resource_type, extra_fields=redact_fields)


def _to_row(record: AuditRecord, prev_hash: str | None, event_hash: str) -> AuditEvent:
    return AuditEvent(
        event_id=record.event_id,
        occurred_at=record.occurred_at,
        tenant_id=record.tenant_id,
        principal_id=record.principal_id,
        principal_role=record.principal_role,
        resource_type=record.resource_type,
        resource_id=record.resource_id,
        action=record.action,
        decision=record.decision,
        outcome=record.outcome,
        reason=record.reason,
        before_json=record.before,
        after_json=record.after,
        request_id=record.request_id,
        prev_hash=prev_hash,
        event_hash=event_hash,
    )


@lru_cache
def get_audit_recorder() -> AuditRecorder:
    return AuditRecorder()
