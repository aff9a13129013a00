"""Audit ledger: append semantics, querying and the bounded retention sweep."""

import asyncio
from datetime import timedelta

import pytest
from conftest import BASE_TIME, AuditDownStore
from hypothesis import given, settings
from hypothesis import strategies as st

from adapters.memory import InMemoryCareStore
from caredispatch.domain.errors import InfrastructureFailure
from caredispatch.domain.models import AuditAction, AuditRecord
from caredispatch.services.audit_ledger import AuditLedger, AuditQuery
from caredispatch.services.due_time import add_months


async def _seed(store: InMemoryCareStore, ages_in_days: list[int]) -> None:
    for index, age in enumerate(ages_in_days):
        await store.append_audit(
            AuditRecord(
                actor_id=f"actor-{index % 3}",
                action=AuditAction.CUSTOM,
                timestamp=BASE_TIME - timedelta(days=age),
            )
        )


class TestAppend:
    async def test_record_builds_and_stores(
        self, ledger: AuditLedger, store: InMemoryCareStore
    ) -> None:
        record = await ledger.record(
            "caregiver-1",
            AuditAction.NOTIFICATION_SENT,
            {"notification_id": "n-1", "priority": "high"},
            target_id="subject-1",
            origin="10.0.0.7",
        )

        assert record.timestamp.tzinfo is not None
        assert await store.count_audit() == 1

    async def test_store_outage_surfaces_as_infrastructure_failure(self) -> None:
        ledger = AuditLedger(AuditDownStore())

        with pytest.raises(InfrastructureFailure):
            await ledger.record("caregiver-1", AuditAction.CUSTOM)

    async def test_best_effort_returns_none_on_outage(self) -> None:
        ledger = AuditLedger(AuditDownStore())

        assert await ledger.record_best_effort("caregiver-1", AuditAction.CUSTOM) is None

    def test_records_are_immutable(self) -> None:
        record = AuditRecord(actor_id="a", action=AuditAction.CUSTOM)
        with pytest.raises(ValueError, match="frozen"):
            record.actor_id = "b"  # type: ignore[misc]


class TestQuery:
    async def test_filters_and_orders_newest_first(
        self, ledger: AuditLedger, store: InMemoryCareStore
    ) -> None:
        await _seed(store, [1, 2, 3, 4, 5, 6])

        page = await ledger.query(AuditQuery(actor_id="actor-0", limit=1))

        assert page.total == 2
        assert page.has_more
        assert page.records[0].timestamp == BASE_TIME - timedelta(days=1)

        second = await ledger.query(AuditQuery(actor_id="actor-0", limit=1, offset=1))
        assert second.records[0].timestamp == BASE_TIME - timedelta(days=4)
        assert not second.has_more

    async def test_time_range_filter(self, ledger: AuditLedger, store: InMemoryCareStore) -> None:
        await _seed(store, [1, 10, 20, 30])

        page = await ledger.query(
            AuditQuery(start=BASE_TIME - timedelta(days=15), end=BASE_TIME - timedelta(days=5))
        )

        assert [r.timestamp for r in page.records] == [BASE_TIME - timedelta(days=10)]

    def test_limit_is_capped(self) -> None:
        with pytest.raises(ValueError):
            AuditQuery(limit=501)


class TestRetention:
    async def test_cutoff_is_six_calendar_months(self, ledger: AuditLedger) -> None:
        assert ledger.retention_cutoff(BASE_TIME) == add_months(BASE_TIME, -6)

    async def test_sweep_is_bounded_and_converges(self, store: InMemoryCareStore) -> None:
        ledger = AuditLedger(store, batch_size=4)
        await _seed(store, [400] * 10 + [10] * 3)

        deleted = [await ledger.sweep_retention(BASE_TIME) for _ in range(5)]

        assert deleted == [4, 4, 2, 0, 0]
        assert await store.count_audit() == 3

    async def test_drain_stops_on_short_batch(self, store: InMemoryCareStore) -> None:
        ledger = AuditLedger(store, batch_size=4)
        await _seed(store, [400] * 10)

        assert await ledger.drain_retention(BASE_TIME, max_batches=10) == 10
        assert await ledger.drain_retention(BASE_TIME, max_batches=10) == 0

    async def test_drain_respects_max_batches(self, store: InMemoryCareStore) -> None:
        ledger = AuditLedger(store, batch_size=2)
        await _seed(store, [400] * 10)

        assert await ledger.drain_retention(BASE_TIME, max_batches=2) == 4

    @settings(max_examples=30, deadline=None)
    @given(
        ages=st.lists(st.integers(min_value=0, max_value=900), max_size=40),
        batch_size=st.integers(min_value=1, max_value=15),
    )
    def test_sweep_never_touches_records_inside_retention(
        self, ages: list[int], batch_size: int
    ) -> None:
        asyncio.run(self._sweep_until_empty(ages, batch_size))

    @staticmethod
    async def _sweep_until_empty(ages: list[int], batch_size: int) -> None:
        store = InMemoryCareStore()
        ledger = AuditLedger(store, batch_size=batch_size)
        await _seed(store, ages)
        cutoff = ledger.retention_cutoff(BASE_TIME)
        expected_survivors = sum(1 for age in ages if BASE_TIME - timedelta(days=age) >= cutoff)

        while True:
            deleted = await ledger.sweep_retention(BASE_TIME)
            assert deleted <= batch_size
            if deleted == 0:
                break

        survivors, total = await store.query_audit(limit=1000)
        assert total == expected_survivors
        assert all(record.timestamp >= cutoff for record in survivors)
