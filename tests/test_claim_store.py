"""
Tests for the session claim store.

Validates:
- Submission validation, tax derivation and fraud scoring
- Exactly one claims-changed event per mutation, after persistence settles
- Update/remove semantics and read-only fields
- Refresh fallback to cached claims on upstream failure or timeout
"""

import asyncio
from decimal import Decimal

import pytest

from src.claims.errors import ClaimNotFoundError, ClaimValidationError, UpstreamError
from src.claims.fraud import DUPLICATE_DETECTION, FraudScorer
from src.claims.schema import ClaimInput, ClaimStatus, User
from src.storage.claim_store import ClaimStore
from src.storage.event_bus import Topic
from src.storage.persistence import ClaimFilter, InMemoryPersistenceAdapter

from conftest import claim_input, make_claim, make_settings


def run(coro):
    return asyncio.run(coro)


def collect(bus, topic=Topic.CLAIMS_CHANGED):
    received = []
    bus.subscribe(topic, received.append)
    return received


# ============================================================================
# Create
# ============================================================================


class TestCreate:

    def test_create_then_get(self, store):
        claim = run(store.create(claim_input()))

        stored = store.get(claim.id)
        assert stored == claim
        assert stored.status == ClaimStatus.PENDING
        assert stored.tax_amount == Decimal("67.50")
        assert stored.submitted_at == store.now()
        assert stored.id.startswith("CLM-20250115")

    def test_tax_override_kept(self, store):
        claim = run(store.create(claim_input(tax_amount="50")))
        assert claim.tax_amount == Decimal("50")
        assert claim.tax_overridden is True

    def test_tax_derived_at_configured_rate(self, bus, clock):
        settings = make_settings(tax_rate=Decimal("0.10"))
        store = ClaimStore(InMemoryPersistenceAdapter(), bus, settings, FraudScorer.from_settings(settings), clock)

        claim = run(store.create(claim_input()))

        assert claim.tax_amount == Decimal("45.00")
        assert claim.tax_overridden is False
        assert claim.flags == ()

    def test_draft_requested(self, store):
        claim = run(store.create(claim_input(draft=True)))
        assert claim.status == ClaimStatus.DRAFT

    def test_accepts_claim_input_model(self, store):
        claim = run(store.create(ClaimInput.model_validate(claim_input())))
        assert store.get(claim.id) is not None

    def test_lists_every_violation(self, store, bus):
        received = collect(bus)
        with pytest.raises(ClaimValidationError) as exc_info:
            run(store.create({"employee_id": "EMP-1", "amount": "0", "description": ""}))

        fields = {v.split(":")[0] for v in exc_info.value.violations}
        assert fields == {"amount", "category", "description", "attachments"}
        assert received == []
        assert len(store) == 0

    def test_unparseable_amount_reported_with_other_violations(self, store):
        with pytest.raises(ClaimValidationError) as exc_info:
            run(store.create(claim_input(amount="lots", category=None)))

        fields = [v.split(":")[0] for v in exc_info.value.violations]
        assert "amount" in fields
        assert "category" in fields

    def test_exactly_one_event_with_claim_id(self, store, bus):
        received = collect(bus)
        claim = run(store.create(claim_input()))

        assert len(received) == 1
        assert received[0]["claim_id"] == claim.id
        assert received[0]["type"] == "claim_submitted"

    def test_duplicate_submission_flagged(self, store):
        first = run(store.create(claim_input(amount="450", expense_date="2025-01-10")))
        second = run(store.create(claim_input(amount="450", expense_date="2025-01-10")))

        assert first.flags == ()
        assert DUPLICATE_DETECTION in second.flags
        assert second.risk_score >= 40
        assert second.is_flagged is True

    def test_defaults_filled_from_user_directory(self, bus, settings, clock):
        adapter = InMemoryPersistenceAdapter(
            users=[User(id="EMP-9", name="Pieter van Wyk", department="Operations")]
        )
        store = ClaimStore(adapter, bus, settings, clock=clock)
        run(store.load_users())

        claim = run(store.create(claim_input(employee_id="EMP-9", employee_name=None, department=None)))

        assert claim.employee_name == "Pieter van Wyk"
        assert claim.department == "Operations"

    def test_missing_expense_date_defaults_to_submission_day(self, store):
        claim = run(store.create(claim_input(expense_date=None)))
        assert claim.expense_date == store.now().date()

    def test_upstream_failure_is_retryable_and_silent(self, store, adapter, bus):
        received = collect(bus)
        adapter.fail_operations.add("create_claim")

        with pytest.raises(UpstreamError) as exc_info:
            run(store.create(claim_input()))

        assert exc_info.value.retryable is True
        assert received == []
        assert len(store) == 0


# ============================================================================
# Update / remove
# ============================================================================


class TestUpdate:

    def test_update_merges_and_bumps_version(self, store, bus, clock):
        claim = run(store.create(claim_input()))
        received = collect(bus)
        clock.advance(hours=1)

        updated = run(store.update(claim.id, {"amount": "500"}))

        assert updated.amount == Decimal("500")
        assert updated.tax_amount == Decimal("75.00")
        assert updated.version == claim.version + 1
        assert updated.updated_at > claim.updated_at
        assert store.get(claim.id) == updated
        assert [event["type"] for event in received] == ["claim_updated"]

    def test_overridden_tax_not_recomputed(self, store):
        claim = run(store.create(claim_input(tax_amount="50")))
        updated = run(store.update(claim.id, {"amount": "500"}))
        assert updated.tax_amount == Decimal("50")

    def test_unknown_id(self, store):
        with pytest.raises(ClaimNotFoundError):
            run(store.update("CLM-missing", {"description": "x"}))

    def test_read_only_and_unknown_fields(self, store):
        claim = run(store.create(claim_input()))
        with pytest.raises(ClaimValidationError) as exc_info:
            run(store.update(claim.id, {"id": "other", "colour": "red"}))
        assert exc_info.value.violations == ["id: is read-only", "colour: unknown field"]

    def test_risk_threshold_is_read_only(self, store):
        claim = run(store.create(claim_input()))

        with pytest.raises(ClaimValidationError) as exc_info:
            run(store.update(claim.id, {"risk_threshold": 0}))

        assert exc_info.value.violations == ["risk_threshold: is read-only"]
        assert store.get(claim.id).is_flagged is False

    def test_invalid_patch_value(self, store):
        claim = run(store.create(claim_input()))
        with pytest.raises(ClaimValidationError):
            run(store.update(claim.id, {"amount": "-10"}))
        assert store.get(claim.id) == claim

    def test_rescored_when_amount_changes(self, store):
        first = run(store.create(claim_input(amount="450")))
        second = run(store.create(claim_input(amount="300")))
        assert second.flags == ()

        updated = run(store.update(second.id, {"amount": "450"}))
        assert DUPLICATE_DETECTION in updated.flags
        assert first.id != second.id

    def test_remove(self, store, adapter, bus):
        claim = run(store.create(claim_input()))
        received = collect(bus)

        run(store.remove(claim.id))

        assert store.get(claim.id) is None
        assert adapter.stored(claim.id) is None
        assert received == [{"type": "claim_deleted", "claim_id": claim.id, "version": store.version}]

    def test_remove_unknown(self, store):
        with pytest.raises(ClaimNotFoundError):
            run(store.remove("CLM-missing"))


# ============================================================================
# Writes that outlive their timeout
# ============================================================================


class TestLateWrites:

    @pytest.fixture
    def slow(self, bus, clock):
        settings = make_settings(submit_timeout_seconds=0.05)
        adapter = InMemoryPersistenceAdapter()
        return adapter, ClaimStore(adapter, bus, settings, FraudScorer.from_settings(settings), clock)

    def test_late_create_lands_and_is_announced_once(self, slow, bus):
        adapter, store = slow
        adapter.delay_once["create_claim"] = 0.2
        received = collect(bus)

        async def scenario():
            with pytest.raises(UpstreamError) as exc_info:
                await store.create(claim_input())
            assert exc_info.value.timed_out is True
            assert len(store) == 0

            await asyncio.sleep(0.3)

        run(scenario())

        [claim] = store.snapshot().claims
        assert adapter.stored(claim.id) == claim
        assert [(e["type"], e["claim_id"]) for e in received] == [("claim_submitted", claim.id)]

    def test_late_update_lands_and_is_announced_once(self, slow, bus):
        adapter, store = slow
        received = []

        async def scenario():
            claim = await store.create(claim_input())
            bus.subscribe(Topic.CLAIMS_CHANGED, received.append)
            adapter.delay_once["update_claim"] = 0.2

            with pytest.raises(UpstreamError) as exc_info:
                await store.update(claim.id, {"description": "Fuel and tolls"})
            assert exc_info.value.timed_out is True
            assert store.get(claim.id).description == claim.description
            assert store.write_in_flight(claim.id) is True

            await asyncio.sleep(0.3)
            return claim.id

        claim_id = run(scenario())

        updated = store.get(claim_id)
        assert updated.description == "Fuel and tolls"
        assert updated.version == 2
        assert store.write_in_flight(claim_id) is False
        assert [e["type"] for e in received] == ["claim_updated"]

    def test_late_remove_lands_and_is_announced_once(self, slow, bus):
        adapter, store = slow
        received = []

        async def scenario():
            claim = await store.create(claim_input())
            bus.subscribe(Topic.CLAIMS_CHANGED, received.append)
            adapter.delay_once["delete_claim"] = 0.2

            with pytest.raises(UpstreamError) as exc_info:
                await store.remove(claim.id)
            assert exc_info.value.timed_out is True
            assert store.get(claim.id) is not None

            await asyncio.sleep(0.3)
            return claim.id

        claim_id = run(scenario())

        assert store.get(claim_id) is None
        assert adapter.stored(claim_id) is None
        assert [e["type"] for e in received] == ["claim_deleted"]

    def test_writes_wait_for_earlier_write_to_settle(self, slow):
        adapter, store = slow

        async def scenario():
            claim = await store.create(claim_input())
            adapter.delay_once["update_claim"] = 0.2
            with pytest.raises(UpstreamError):
                await store.update(claim.id, {"description": "Fuel and tolls"})

            with pytest.raises(UpstreamError) as exc_info:
                await store.update(claim.id, {"vendor": "Shell"})
            assert exc_info.value.timed_out is False
            assert exc_info.value.retryable is True

            await asyncio.sleep(0.3)
            return await store.update(claim.id, {"vendor": "Shell"})

        updated = run(scenario())

        assert updated.version == 3
        assert updated.description == "Fuel and tolls"
        assert updated.vendor == "Shell"


# ============================================================================
# Reads and refresh
# ============================================================================


class TestReads:

    def test_list_by_employee_and_filter(self, bus, settings, clock):
        adapter = InMemoryPersistenceAdapter(claims=[
            make_claim("C1", employee_id="EMP-1", department="Sales"),
            make_claim("C2", employee_id="EMP-2", department="Sales", status=ClaimStatus.APPROVED),
            make_claim("C3", employee_id="EMP-2", department="IT", category="Communications"),
        ])
        store = ClaimStore(adapter, bus, settings, clock=clock)
        result = run(store.refresh())

        assert result.stale is False
        assert {c.id for c in store.list_by_employee("EMP-2")} == {"C2", "C3"}
        assert {c.id for c in store.list_by_filter(department="Sales")} == {"C1", "C2"}
        assert {c.id for c in store.list_by_filter(status="pending")} == {"C1", "C3"}
        assert [c.id for c in store.list_by_filter(category="Communications")] == ["C3"]

    def test_unknown_status_filter(self, store):
        with pytest.raises(ClaimValidationError) as exc_info:
            store.list_by_filter(status="bogus")
        assert exc_info.value.violations[0].startswith("status:")

    def test_snapshot_is_ordered_and_versioned(self, store, clock):
        first = run(store.create(claim_input()))
        clock.advance(minutes=5)
        second = run(store.create(claim_input(amount="20")))

        snapshot = store.snapshot()
        assert [c.id for c in snapshot.claims] == [first.id, second.id]
        assert snapshot.version == store.version == 2

    def test_refresh_failure_serves_cached_claims(self, bus, settings, clock):
        adapter = InMemoryPersistenceAdapter(claims=[make_claim("C1")])
        store = ClaimStore(adapter, bus, settings, clock=clock)
        run(store.refresh())

        adapter.fail_operations.add("fetch_claims")
        result = run(store.refresh())

        assert result.stale is True
        assert isinstance(result.error, UpstreamError)
        assert [c.id for c in result.claims] == ["C1"]
        assert store.get("C1") is not None

    def test_refresh_drops_claims_deleted_upstream(self, bus, settings, clock):
        adapter = InMemoryPersistenceAdapter(claims=[make_claim("C1"), make_claim("C2")])
        store = ClaimStore(adapter, bus, settings, clock=clock)
        run(store.refresh())

        run(adapter.delete_claim("C2"))
        run(store.refresh())

        assert store.get("C2") is None
        assert store.get("C1") is not None

    def test_filtered_refresh_keeps_other_claims(self, bus, settings, clock):
        adapter = InMemoryPersistenceAdapter(claims=[
            make_claim("C1", employee_id="EMP-1"),
            make_claim("C2", employee_id="EMP-2"),
        ])
        store = ClaimStore(adapter, bus, settings, clock=clock)
        run(store.refresh())
        run(adapter.delete_claim("C2"))

        run(store.refresh(ClaimFilter(employee_id="EMP-1")))

        assert store.get("C2") is not None

    def test_late_refresh_still_applied_and_announced(self, bus, clock):
        settings = make_settings(fetch_timeout_seconds=0.05)
        adapter = InMemoryPersistenceAdapter(claims=[make_claim("C1")], latency=0.2)
        store = ClaimStore(adapter, bus, settings, FraudScorer.from_settings(settings), clock)
        received = collect(bus)

        async def scenario():
            result = await store.refresh()
            assert result.stale is True
            assert result.error.timed_out is True
            assert store.get("C1") is None

            await asyncio.sleep(0.3)

        run(scenario())

        assert store.get("C1") is not None
        assert [event["type"] for event in received] == ["claims_refreshed"]

    def test_user_directory_kept_on_failure(self, bus, settings, clock):
        adapter = InMemoryPersistenceAdapter(users=[User(id="EMP-1", name="Thandi Nkosi")])
        store = ClaimStore(adapter, bus, settings, clock=clock)
        run(store.load_users())

        adapter.fail_operations.add("fetch_users")
        users = run(store.load_users())

        assert [u.id for u in users] == ["EMP-1"]
