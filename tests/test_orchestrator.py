"""Tests for the orchestrator: assignment, lifecycle and control operations."""

import asyncio
from datetime import timedelta

import pytest
from conftest import BASE_RESERVE, address_of, escrow, make_secret, new_address

from claimfleet.constants import PipelinePhase, WalletStatus
from claimfleet.errors import BotNotRunningError, ControlError, LedgerError, NoSponsorAvailableError, WalletNotFoundError
from claimfleet.orchestrator import Orchestrator
from claimfleet.scheduler import to_iso, utcnow


@pytest.fixture
async def orch(gateway, store, alerts, run_config, funder):
    o = Orchestrator(gateway, store, alerts, run_config, tick_interval=3600, maintenance_interval=3600)
    yield o
    await o.stop(drain=True)


async def _queue(store, gateway, n: int, status=WalletStatus.AWAITING_EXECUTION) -> list[str]:
    secrets = []
    for _ in range(n):
        secret = make_secret()
        gateway.set_balance(address_of(secret), 3_000_000)
        await store.upsert(secret, address=address_of(secret), status=status)
        secrets.append(secret)
    return secrets


async def _settle(orch: Orchestrator) -> None:
    if orch._pipelines:
        await asyncio.gather(*orch._pipelines)


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_start_stop(self, orch) -> None:
        assert orch.start()
        assert not orch.start()
        assert orch.status()["running"]
        assert await orch.stop()
        assert not await orch.stop()
        assert not orch.status()["running"]

    @pytest.mark.asyncio
    async def test_start_without_config(self, gateway, store, alerts) -> None:
        o = Orchestrator(gateway, store, alerts)
        with pytest.raises(ControlError):
            o.start()

    @pytest.mark.asyncio
    async def test_status_shape(self, orch, run_config) -> None:
        orch.start()
        status = orch.status()
        assert status["recipient"] == run_config.recipient
        assert status["concurrency"] == run_config.concurrency
        assert status["funding_failures"] == 0
        assert [s["busy"] for s in status["sponsors"]] == [False, False]

    @pytest.mark.asyncio
    async def test_stop_with_drain_waits_for_pipelines(self, orch, store, gateway) -> None:
        orch.start()
        (secret,) = await _queue(store, gateway, 1)
        await orch.assign()
        assert orch.status()["in_flight"] == 1
        await orch.stop(drain=True)
        assert orch.status()["in_flight"] == 0
        assert (await store.find(secret))["status"] == "SUCCESS"


class TestAssign:
    @pytest.mark.asyncio
    async def test_nothing_when_stopped(self, orch, store, gateway) -> None:
        await _queue(store, gateway, 1)
        assert await orch.assign() == []

    @pytest.mark.asyncio
    async def test_pairs_in_insertion_order(self, orch, store, gateway) -> None:
        orch.start()
        secrets = await _queue(store, gateway, 2)
        pairs = await orch.assign()
        assert [r["secret"] for r, _ in pairs] == secrets
        for record, sponsor in pairs:
            assert sponsor.is_busy
            stored = await store.find(record["secret"])
            assert stored["status"] == "EXECUTING"
            assert stored["sponsor"] == sponsor.address
        await _settle(orch)

    @pytest.mark.asyncio
    async def test_bounded_by_concurrency(self, gateway, store, alerts, run_config, funder) -> None:
        config = run_config.model_copy(update={"concurrency": 1})
        o = Orchestrator(gateway, store, alerts, config, tick_interval=3600, maintenance_interval=3600)
        o.start()
        await _queue(store, gateway, 3)
        assert len(await o.assign()) == 1
        assert o.pool.busy_count() == 1
        # still busy: the next pass has no room
        assert await o.assign() == []
        await o.stop(drain=True)

    @pytest.mark.asyncio
    async def test_bounded_by_pool_size(self, orch, store, gateway) -> None:
        orch.start()
        await _queue(store, gateway, 5)
        pairs = await orch.assign()
        assert len(pairs) == 2
        assert len(await store.list_by_status(WalletStatus.AWAITING_EXECUTION)) == 3
        await _settle(orch)

    @pytest.mark.asyncio
    async def test_sponsor_never_shared(self, orch, store, gateway) -> None:
        orch.start()
        await _queue(store, gateway, 6)
        seen = []
        for _ in range(6):
            pairs = await orch.assign()
            busy = [s.address for s in orch.pool if s.is_busy]
            assert len(busy) == len(set(busy))
            seen.extend(s.address for _, s in pairs)
            await _settle(orch)
        assert len(await store.list_by_status(WalletStatus.SUCCESS)) == 6
        assert orch.pool.busy_count() == 0

    @pytest.mark.asyncio
    async def test_tick_promotes_then_assigns(self, orch, store, gateway) -> None:
        orch.start()
        now = utcnow()
        soon, later = make_secret(), make_secret()
        for s, minutes in ((soon, 5), (later, 30)):
            gateway.set_balance(address_of(s), 3_000_000)
            gateway.escrows[address_of(s)] = [escrow(new_address(), 1_000_000, finish_in=timedelta(minutes=minutes))]
            await store.upsert(s, address=address_of(s), status=WalletStatus.SCHEDULED, unlock_time=to_iso(now + timedelta(minutes=minutes)))

        pairs = await orch.tick(now)

        assert [r["secret"] for r, _ in pairs] == [soon]
        assert (await store.find(later))["status"] == "SCHEDULED"
        await _settle(orch)


class TestFundingFailures:
    @pytest.mark.asyncio
    async def test_counter_increments_and_resets(self, orch, store, gateway, funder) -> None:
        orch.start()
        gateway.fail_submit[funder.address] = LedgerError.from_result("tecUNFUNDED_PAYMENT")
        await _queue(store, gateway, 2)
        await orch.assign()
        await _settle(orch)
        assert orch.status()["funding_failures"] == 2
        assert len(await store.list_by_status(WalletStatus.FAILED)) == 2

        del gateway.fail_submit[funder.address]
        await _queue(store, gateway, 1)
        await orch.assign()
        await _settle(orch)
        assert orch.funding_failures == 0


class TestForceRun:
    @pytest.mark.asyncio
    async def test_requires_running(self, orch, store, gateway) -> None:
        (secret,) = await _queue(store, gateway, 1, WalletStatus.SCHEDULED)
        with pytest.raises(BotNotRunningError):
            await orch.force_run(secret)

    @pytest.mark.asyncio
    async def test_unknown_wallet(self, orch) -> None:
        orch.start()
        with pytest.raises(WalletNotFoundError):
            await orch.force_run(make_secret())

    @pytest.mark.asyncio
    async def test_no_free_sponsor(self, orch, store, gateway) -> None:
        orch.start()
        (secret,) = await _queue(store, gateway, 1, WalletStatus.SCHEDULED)
        for s in orch.pool:
            orch.pool.acquire(s)
        with pytest.raises(NoSponsorAvailableError):
            await orch.force_run(secret)

    @pytest.mark.asyncio
    async def test_runs_inline_and_releases(self, orch, store, gateway) -> None:
        orch.start()
        (secret,) = await _queue(store, gateway, 1, WalletStatus.SCHEDULED)
        message = await orch.force_run(secret)
        assert message.startswith("SUCCESS: ")
        assert (await store.find(secret))["status"] == "SUCCESS"
        assert orch.pool.busy_count() == 0

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [WalletStatus.SUCCESS, WalletStatus.INACTIVE])
    async def test_finished_wallet_not_rerun(self, orch, store, gateway, status) -> None:
        orch.start()
        (secret,) = await _queue(store, gateway, 1, status)
        with pytest.raises(ControlError):
            await orch.force_run(secret)
        assert (await store.find(secret))["status"] == status
        assert gateway.submitted == []
        assert orch.pool.busy_count() == 0

    @pytest.mark.asyncio
    async def test_failed_wallet_can_be_retried(self, orch, store, gateway) -> None:
        orch.start()
        (secret,) = await _queue(store, gateway, 1, WalletStatus.FAILED)
        assert (await orch.force_run(secret)).startswith("SUCCESS: ")

    @pytest.mark.asyncio
    @pytest.mark.parametrize("failing_status", [WalletStatus.EXECUTING, WalletStatus.SUCCESS])
    async def test_store_failure_still_releases(self, orch, store, gateway, failing_status) -> None:
        orch.start()
        (secret,) = await _queue(store, gateway, 1, WalletStatus.SCHEDULED)

        async def upsert(s, _orig=store.upsert, **fields):
            if fields.get("status") == failing_status:
                raise OSError("disk full")
            return await _orig(s, **fields)

        # EXECUTING fails before the pipeline starts, SUCCESS fails inside its finalize
        store.upsert = upsert
        with pytest.raises(OSError):
            await orch.force_run(secret)

        assert orch.pool.busy_count() == 0
        assert secret not in orch._active

    @pytest.mark.asyncio
    async def test_failure_message(self, orch, store, gateway) -> None:
        orch.start()
        secret = make_secret()
        gateway.set_balance(address_of(secret), BASE_RESERVE)
        await store.upsert(secret, address=address_of(secret), status=WalletStatus.PENDING)
        assert await orch.force_run(secret) == "FAILED: nothing to claim/send"
        assert orch.pool.busy_count() == 0


class TestMaintenance:
    @pytest.mark.asyncio
    async def test_funds_idle_sponsors_only(self, orch, gateway) -> None:
        orch.start()
        busy, idle = orch.pool.sponsors
        orch.pool.acquire(busy, "rTarget")
        busy.phase = PipelinePhase.EXECUTE

        assert await orch.maintain() == 1

        assert gateway.balance(idle.address) > 0
        assert gateway.balance(busy.address) == 0
        assert busy.is_busy and busy.phase == PipelinePhase.EXECUTE
        assert not idle.is_busy

    @pytest.mark.asyncio
    async def test_failure_does_not_stop_the_pass(self, orch, gateway) -> None:
        orch.start()
        first, second = orch.pool.sponsors
        gateway.fail_load[first.address] = TimeoutError("slow")
        assert await orch.maintain() == 1
        assert gateway.balance(second.address) > 0
        assert orch.pool.busy_count() == 0

    @pytest.mark.asyncio
    async def test_sponsor_stays_assignable_while_checked(self, orch, gateway) -> None:
        orch.start()
        seen = []

        async def load(address, _orig=gateway.load_account):
            sponsor = next((s for s in orch.pool if s.address == address), None)
            if sponsor is not None:
                seen.append((sponsor.maintaining, sponsor.is_busy, orch.pool.busy_count(), len(orch.pool.list_available())))
            return await _orig(address)

        gateway.load_account = load
        assert await orch.maintain() == 2

        assert seen == [(True, False, 0, 2), (True, False, 0, 2)]
        assert not any(s.maintaining for s in orch.pool)

    @pytest.mark.asyncio
    async def test_idle_when_stopped(self, orch) -> None:
        assert await orch.maintain() == 0


class TestControl:
    @pytest.mark.asyncio
    async def test_schedule_new_delegates_to_intake(self, orch, gateway) -> None:
        secret = make_secret()
        gateway.set_balance(address_of(secret), 3_000_000)
        stats = await orch.schedule_new([secret, "garbage"])
        assert stats.pending == 1
        assert stats.invalid == 1

    @pytest.mark.asyncio
    async def test_clear_refused_while_in_flight(self, orch, store, gateway) -> None:
        orch.start()
        await _queue(store, gateway, 1)
        await orch.assign()
        with pytest.raises(ControlError):
            await orch.clear_wallets()
        await _settle(orch)
        assert await orch.clear_wallets() == 1

    @pytest.mark.asyncio
    async def test_wallet_details(self, orch, gateway) -> None:
        addr = new_address()
        gateway.set_balance(addr, 5_000_000, owner_count=1)
        gateway.escrows[addr] = [escrow(new_address(), 7, finish_in=timedelta(minutes=-1))]
        details = await orch.wallet_details(addr)
        assert details["reserve"] == 1_200_000
        assert details["spendable"] == 3_800_000
        assert details["escrows"][0]["unlocked"] is True

    @pytest.mark.asyncio
    async def test_wallet_details_absent(self, orch) -> None:
        addr = new_address()
        assert await orch.wallet_details(addr) == {"address": addr, "exists": False}
