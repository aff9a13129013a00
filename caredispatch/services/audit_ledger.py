"""
Append-only audit ledger with a bounded retention sweep.

The ledger is the compliance record: append failures are never swallowed
here, they surface as InfrastructureFailure so the caller can log the
partial failure loudly.
"""

from datetime import datetime

from pydantic import BaseModel, Field

from caredispatch.domain.errors import CareDispatchError, InfrastructureFailure
from caredispatch.domain.models import AuditAction, AuditRecord, AuditValue, ensure_utc, utc_now
from caredispatch.services.due_time import add_months
from caredispatch.services.ports import AuditStore, logger

MAX_QUERY_LIMIT = 500


class AuditQuery(BaseModel):
    actor_id: str | None = None
    target_id: str | None = None
    actions: list[AuditAction] | None = None
    start: datetime | None = None
    end: datetime | None = None
    limit: int = Field(default=50, gt=0, le=MAX_QUERY_LIMIT)
    offset: int = Field(default=0, ge=0)


class AuditPage(BaseModel):
    records: list[AuditRecord]
    total: int
    limit: int
    offset: int

    @property
    def has_more(self) -> bool:
        return self.offset + self.limit < self.total


class AuditLedger:
    """Writes, queries and sweeps AuditRecords."""

    def __init__(
        self, store: AuditStore, retention_months: int = 6, batch_size: int = 1000
    ) -> None:
        self.store = store
        self.retention_months = retention_months
        self.batch_size = batch_size
        self.logger = logger.bind(component="audit_ledger")

    async def append(self, record: AuditRecord) -> AuditRecord:
        try:
            stored = await self.store.append_audit(record)
        except CareDispatchError:
            self.logger.error(
                "audit_append_failed", action=record.action.value, actor_id=record.actor_id
            )
            raise
        except Exception as e:
            self.logger.error(
                "audit_append_failed",
                action=record.action.value,
                actor_id=record.actor_id,
                error=str(e),
            )
            raise InfrastructureFailure("audit store unreachable", action=record.action) from e

        self.logger.debug("audit_appended", action=stored.action.value, record_id=stored.id)
        return stored

    async def record(
        self,
        actor_id: str,
        action: AuditAction,
        details: dict[str, AuditValue] | None = None,
        *,
        target_id: str | None = None,
        origin: str = "system",
        timestamp: datetime | None = None,
    ) -> AuditRecord:
        """Build and append one record."""
        record = AuditRecord(
            actor_id=actor_id,
            action=action,
            details=details or {},
            target_id=target_id,
            origin=origin,
            timestamp=timestamp or utc_now(),
        )
        return await self.append(record)

    async def query(self, query: AuditQuery) -> AuditPage:
        records, total = await self.store.query_audit(
            actor_id=query.actor_id,
            target_id=query.target_id,
            actions=query.actions,
            start=ensure_utc(query.start) if query.start else None,
            end=ensure_utc(query.end) if query.end else None,
            limit=query.limit,
            offset=query.offset,
        )
        return AuditPage(records=records, total=total, limit=query.limit, offset=query.offset)

    def retention_cutoff(self, now: datetime, retention_months: int | None = None) -> datetime:
        return add_months(ensure_utc(now), -(retention_months or self.retention_months))

    async def sweep_retention(
        self,
        now: datetime | None = None,
        retention_months: int | None = None,
        batch_size: int | None = None,
    ) -> int:
        """
        Delete one bounded batch of records older than the retention cutoff.

        Returns the number deleted; never more than batch_size. Safe to rerun:
        once nothing is eligible every call returns 0.
        """
        cutoff = self.retention_cutoff(now or utc_now(), retention_months)
        limit = batch_size or self.batch_size
        if limit <= 0:
            raise ValueError("batch_size must be positive")

        deleted = await self.store.delete_audit_before(cutoff, limit)
        self.logger.info(
            "audit_retention_batch", cutoff=cutoff.isoformat(), deleted=deleted, batch_size=limit
        )
        return deleted

    async def drain_retention(
        self, now: datetime | None = None, max_batches: int = 10
    ) -> int:
        """Run sweep_retention until a short batch or max_batches; returns total deleted."""
        now = now or utc_now()
        total = 0
        for _ in range(max_batches):
            deleted = await self.sweep_retention(now)
            total += deleted
            if deleted < self.batch_size:
                break
        return total

    async def record_best_effort(
        self,
        actor_id: str,
        action: AuditAction,
        details: dict[str, AuditValue] | None = None,
        *,
        target_id: str | None = None,
        origin: str = "system",
        timestamp: datetime | None = None,
    ) -> AuditRecord | None:
        """
        Append after an entity mutation already succeeded.

        The mutation is the source of truth and is not rolled back; a failed
        write is logged as a partial failure and None is returned.
        """
        try:
            return await self.record(
                actor_id,
                action,
                details,
                target_id=target_id,
                origin=origin,
                timestamp=timestamp,
            )
        except Exception as e:
            self.logger.error(
                "audit_write_failed",
                action=action.value,
                actor_id=actor_id,
                target_id=target_id,
                partial_failure=True,
                error=str(e),
            )
            return None
