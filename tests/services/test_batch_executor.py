"""Integration Tests: BatchExecutor — retries, idempotency, outbox recovery.

Invariants:
    - Transient failures are retried; a success on attempt N writes exactly one
      DistributionRecord per recipient
    - A transfer that posted but timed out is found by idempotency key and
      never resubmitted as a second transfer
    - Rejections are not retried
    - After confirmation only the local write is retried
    - recover_unresolved() settles markers left behind by an aborted pass
"""

from decimal import Decimal

import pytest
from sqlalchemy import func, select

from fee_distributor.core.batching import idempotency_key
from fee_distributor.core.domain_types import BatchStatus, Payout
from fee_distributor.core.errors import (
    LeaseLostError,
    PersistenceError,
    RejectedTransferError,
    RetriesExhaustedError,
    TimedOutAmbiguousError,
)
from fee_distributor.models.distribution import DistributionRecord

from tests.services.conftest import make_executor
from tests.services.fake_network import FakeTransferNetwork

TWO = [Payout("W", Decimal("0.02")), Payout("X", Decimal("0.03"))]


async def _records(db):
    async with db.session() as s:
        result = await s.execute(
            select(DistributionRecord.recipient_address, DistributionRecord.transfer_ref)
            .order_by(DistributionRecord.recipient_address),
        )
        return [tuple(r) for r in result]


async def _record_count(db):
    async with db.session() as s:
        return await s.scalar(select(func.count()).select_from(DistributionRecord))


# ==============================================================================
# Happy path and batching
# ==============================================================================


async def test_confirmed_batch_is_recorded(db, outbox, executor, network):
    executed = await executor.execute(TWO, 0)

    assert [(e.recipient, e.transfer_ref) for e in executed] == [
        ("W", "tx-1"), ("X", "tx-1"),
    ]
    assert await _records(db) == [("W", "tx-1"), ("X", "tx-1")]
    key = idempotency_key(0, TWO)
    assert (await outbox.get(key)).status == BatchStatus.RECORDED.value
    # 0.02 * 10^9 * 0.99 base units
    assert network.payloads[key].instructions[0].units == 19_800_000


async def test_payouts_are_split_into_batches(db, outbox, network):
    executor = make_executor(outbox, network, batch_size=2)
    payouts = [Payout(f"r{i}", Decimal("0.01")) for i in range(5)]
    executed = await executor.execute(payouts, 0)
    assert len(executed) == 5
    assert len(network.submissions) == 3
    assert len(network.distinct_refs) == 3


async def test_recorded_batch_is_not_paid_again(db, executor, network):
    await executor.execute(TWO, 0)
    again = await executor.execute(TWO, 0)
    assert len(again) == 2
    assert len(network.submissions) == 1
    assert await _record_count(db) == 2


async def test_heartbeat_runs_before_each_attempt(executor, network):
    network.script = ["transient", "ok"]
    beats = []

    async def heartbeat():
        beats.append(1)

    await executor.execute(TWO, 0, heartbeat=heartbeat)
    assert len(beats) == 2


async def test_lost_lease_stops_the_batch(db, executor, network):
    async def heartbeat():
        raise LeaseLostError("worker-a")

    with pytest.raises(LeaseLostError):
        await executor.execute(TWO, 0, heartbeat=heartbeat)
    assert network.submissions == []
    assert await _record_count(db) == 0


# ==============================================================================
# Retries
# ==============================================================================


async def test_transient_twice_then_success_writes_one_record_set(db, executor, network):
    """Two TransientNetworkErrors then success — one record per recipient, not three."""
    network.script = ["transient", "transient", "ok"]
    await executor.execute([Payout("W", Decimal("0.02"))], 0)

    assert len(network.submissions) == 3
    assert await _records(db) == [("W", "tx-1")]
    # history checked before each resubmission
    assert len(network.history_lookups) >= 2


async def test_fresh_handle_per_attempt(executor, network):
    network.script = ["transient", "transient", "ok"]
    await executor.execute(TWO, 0)
    assert network.handles_issued == 3


async def test_exhausted_retries_fail_the_batch(db, outbox, executor, network):
    """Gateway unreachable for every attempt: nothing was sent, the batch fails."""
    network.handle_fails = 3
    with pytest.raises(RetriesExhaustedError):
        await executor.execute(TWO, 0)

    assert network.submissions == []
    assert await _record_count(db) == 0
    marker = await outbox.get(idempotency_key(0, TWO))
    assert marker.status == BatchStatus.FAILED.value
    assert marker.last_error


async def test_rejection_is_not_retried(db, outbox, executor, network):
    network.script = ["reject"]
    with pytest.raises(RejectedTransferError):
        await executor.execute(TWO, 0)

    assert len(network.submissions) == 1
    assert await _record_count(db) == 0
    assert (await outbox.get(idempotency_key(0, TWO))).status == BatchStatus.FAILED.value


# ==============================================================================
# Ambiguous outcomes
# ==============================================================================


async def test_timed_out_but_posted_is_not_resubmitted(db, executor, network):
    """Timed out on attempt 1, but the transfer posted — reuse it, one ref only."""
    network.script = ["timeout_posted"]
    executed = await executor.execute(TWO, 0)

    assert len(network.submissions) == 1
    assert network.distinct_refs == {"tx-1"}
    assert {e.transfer_ref for e in executed} == {"tx-1"}
    assert await _records(db) == [("W", "tx-1"), ("X", "tx-1")]


async def test_timed_out_and_lost_is_resubmitted(db, executor, network):
    network.script = ["timeout_lost", "ok"]
    await executor.execute(TWO, 0)

    assert len(network.submissions) == 2
    assert await _records(db) == [("W", "tx-2"), ("X", "tx-2")]


async def test_repeated_timeouts_leave_outcome_unknown(db, outbox, executor, network):
    network.script = ["timeout_lost"] * 3
    with pytest.raises(TimedOutAmbiguousError):
        await executor.execute(TWO, 0)

    marker = await outbox.get(idempotency_key(0, TWO))
    assert marker.status == BatchStatus.SUBMITTED.value
    assert marker.handle_expires_at is not None
    assert await _record_count(db) == 0


async def test_submit_errors_with_live_handle_stay_unresolved(db, outbox, executor, network):
    """A submit that raised may have posted; the batch must not be released as FAILED."""
    network.script = ["transient"] * 3
    with pytest.raises(TimedOutAmbiguousError):
        await executor.execute(TWO, 0)

    marker = await outbox.get(idempotency_key(0, TWO))
    assert marker.status == BatchStatus.PENDING.value
    assert marker.attempts == 3
    assert [m.idempotency_key for m in await outbox.unresolved()] == [marker.idempotency_key]


async def test_submit_errors_after_handle_expiry_fail_the_batch(db, outbox):
    network = FakeTransferNetwork(script=["transient"] * 3, handle_ttl_seconds=-1)
    executor = make_executor(outbox, network)
    with pytest.raises(RetriesExhaustedError):
        await executor.execute(TWO, 0)

    marker = await outbox.get(idempotency_key(0, TWO))
    assert marker.status == BatchStatus.FAILED.value


async def test_lost_submit_response_is_recovered_not_repaid(db, outbox, executor, network):
    network.script = ["transient_posted"] * 3
    with pytest.raises(TimedOutAmbiguousError):
        await executor.execute(TWO, 0)
    assert await _record_count(db) == 0

    network.settle_pending()
    assert await executor.recover_unresolved() == 1
    assert await _records(db) == [("W", "tx-1"), ("X", "tx-1")]
    assert network.distinct_refs == {"tx-1"}


# ==============================================================================
# Local write failures
# ==============================================================================


async def test_local_write_retried_without_resubmission(
    db, outbox, executor, network, monkeypatch,
):
    real_record = outbox.record
    failures = {"left": 2}

    async def flaky_record(key, ref):
        if failures["left"]:
            failures["left"] -= 1
            raise PersistenceError("database is locked", "record")
        return await real_record(key, ref)

    monkeypatch.setattr(outbox, "record", flaky_record)
    await executor.execute(TWO, 0)

    assert len(network.submissions) == 1
    assert await _record_count(db) == 2


async def test_unrecordable_confirmation_is_replayed_later(
    db, outbox, executor, network, monkeypatch,
):
    real_record = outbox.record

    async def broken_record(key, ref):
        raise PersistenceError("disk full", "record")

    monkeypatch.setattr(outbox, "record", broken_record)
    with pytest.raises(PersistenceError):
        await executor.execute(TWO, 0)
    key = idempotency_key(0, TWO)
    assert (await outbox.get(key)).status == BatchStatus.CONFIRMED.value

    monkeypatch.setattr(outbox, "record", real_record)
    assert await executor.recover_unresolved() == 1
    assert len(network.submissions) == 1
    assert await _records(db) == [("W", "tx-1"), ("X", "tx-1")]


# ==============================================================================
# Recovery of unresolved markers
# ==============================================================================


async def test_recover_records_transfer_found_in_history(db, outbox, executor, network):
    network.script = ["timeout_posted"]
    network.find_fails = 3
    with pytest.raises(TimedOutAmbiguousError):
        await executor.execute(TWO, 0)
    assert await _record_count(db) == 0

    assert await executor.recover_unresolved() == 1
    assert await _records(db) == [("W", "tx-1"), ("X", "tx-1")]
    assert (await outbox.get(idempotency_key(0, TWO))).status == BatchStatus.RECORDED.value


async def test_recover_blocks_while_outcome_unknown(outbox, executor, network):
    network.script = ["timeout_lost"] * 3
    with pytest.raises(TimedOutAmbiguousError):
        await executor.execute(TWO, 0)

    with pytest.raises(TimedOutAmbiguousError):
        await executor.recover_unresolved()


async def test_recover_releases_batch_after_handle_expiry(db, outbox):
    network = FakeTransferNetwork(
        script=["timeout_lost"] * 3, handle_ttl_seconds=-1,
    )
    executor = make_executor(outbox, network)
    with pytest.raises(TimedOutAmbiguousError):
        await executor.execute(TWO, 0)

    assert await executor.recover_unresolved() == 0
    key = idempotency_key(0, TWO)
    assert (await outbox.get(key)).status == BatchStatus.FAILED.value

    # the released batch can now be paid under the same key
    await executor.execute(TWO, 0)
    assert await _record_count(db) == 2
    assert (await outbox.get(key)).status == BatchStatus.RECORDED.value


async def test_recover_fails_markers_that_never_submitted(outbox, executor, network):
    await outbox.open("k-orphan", 0, TWO)
    assert await executor.recover_unresolved() == 0
    assert (await outbox.get("k-orphan")).status == BatchStatus.FAILED.value
    assert network.history_lookups == []
