"""The bot: owns the sponsor pool, the run config and the tick loops."""

import asyncio
import contextlib
import logging
from collections.abc import Iterable
from datetime import datetime, timedelta

from xrpl.wallet import Wallet

import claimfleet.constants as C
from claimfleet.alerts import AlertSink
from claimfleet.config import RunConfig
from claimfleet.constants import WalletStatus
from claimfleet.errors import BotNotRunningError, ControlError, NoSponsorAvailableError, WalletNotFoundError
from claimfleet.gateway import LedgerGateway
from claimfleet.intake import IntakeStats, schedule_new
from claimfleet.keys import derive_wallet, short, validate_secret
from claimfleet.maintenance import maintain_sponsors, periodic_maintenance
from claimfleet.pipeline import Pipeline, PipelineOutcome
from claimfleet.scheduler import promote_due, to_iso, utcnow
from claimfleet.sponsors import Sponsor, SponsorPool
from claimfleet.store import WalletStore

log = logging.getLogger("claimfleet.orchestrator")


class Orchestrator:
    def __init__(
        self,
        gateway: LedgerGateway,
        store: WalletStore,
        alerts: AlertSink,
        config: RunConfig | None = None,
        *,
        tick_interval: float = C.TICK_INTERVAL,
        maintenance_interval: float = C.MAINTENANCE_INTERVAL,
        lookahead: timedelta = timedelta(minutes=C.LOOKAHEAD_MINUTES),
    ):
        self.gateway = gateway
        self.store = store
        self.alerts = alerts
        self.config = config
        self.tick_interval = tick_interval
        self.maintenance_interval = maintenance_interval
        self.lookahead = lookahead

        self.pool: SponsorPool | None = None
        self.funder: Wallet | None = None
        self.running = False
        self.funding_failures = 0  # consecutive

        self._stop = asyncio.Event()
        self._loops: list[asyncio.Task] = []
        self._pipelines: set[asyncio.Task] = set()
        self._active: set[str] = set()  # secrets with a pipeline in flight

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def start(self, config: RunConfig | None = None) -> bool:
        """Start ticking. Returns False if already running."""
        if self.running:
            return False
        config = config or self.config
        if config is None:
            raise ControlError("no run configuration; POST /config first")
        self.config = config
        self.funder = derive_wallet(config.funder_secret)
        # Pipelines from a previous run still hold sponsors of the old pool
        if self.pool is None or not self._pipelines:
            self.pool = SponsorPool.from_secrets(config.sponsor_secrets)
        self._stop = asyncio.Event()
        self.running = True
        self._loops = [
            asyncio.create_task(self._tick_loop(), name="tick"),
            asyncio.create_task(
                periodic_maintenance(self, self._stop, self.maintenance_interval), name="maintenance"
            ),
        ]
        log.info(
            "Bot started: funder=%s sponsors=%d concurrency=%d recipient=%s",
            short(self.funder.address), len(self.pool), config.concurrency, short(config.recipient),
        )
        return True

    async def stop(self, drain: bool = False) -> bool:
        """Stop ticking and maintenance. In-flight pipelines keep running unless ``drain`` waits for them."""
        if not self.running:
            return False
        self.running = False
        self._stop.set()
        for task in self._loops:
            task.cancel()
        for task in self._loops:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._loops = []
        if drain and self._pipelines:
            log.info("Draining %d in-flight pipeline(s)", len(self._pipelines))
            await asyncio.gather(*self._pipelines, return_exceptions=True)
        log.info("Bot stopped")
        return True

    def update_config(self, config: RunConfig) -> None:
        """Swap the snapshot future pipelines start with. The pool is rebuilt on the next start."""
        self.config = config
        if self.running:
            self.funder = derive_wallet(config.funder_secret)
        log.info("Run config updated")

    async def _tick_loop(self) -> None:
        while not self._stop.is_set():
            try:
                await self.tick()
                await asyncio.sleep(self.tick_interval)
            except asyncio.CancelledError:
                raise
            except Exception:
                log.exception("[tick] loop error; continuing")
                await asyncio.sleep(0.5)

    # =========================================================================
    # Tick: scheduler then assignment
    # =========================================================================

    async def tick(self, now: datetime | None = None) -> list[tuple[dict, Sponsor]]:
        await promote_due(self.store, now, self.lookahead)
        return await self.assign()

    async def assign(self) -> list[tuple[dict, Sponsor]]:
        """Pair queued wallets with idle sponsors and spawn their pipelines."""
        if not self.running or self.pool is None or self.config is None:
            return []
        queue = [r for r in await self.store.list_by_status(WalletStatus.AWAITING_EXECUTION) if r["secret"] not in self._active]
        # No awaits from here until every sponsor in `pairs` is marked busy
        available = self.pool.list_available()
        n = min(len(queue), len(available), self.config.concurrency - self.pool.busy_count())
        if n <= 0:
            return []
        pairs = list(zip(queue[:n], available[:n]))
        for record, sponsor in pairs:
            self.pool.acquire(sponsor, record.get("address"))
            self._active.add(record["secret"])

        config = self.config
        for record, sponsor in pairs:
            try:
                record = await self.store.upsert(record["secret"], status=WalletStatus.EXECUTING, sponsor=sponsor.address)
            except Exception:
                log.exception("Could not mark %s EXECUTING", short(record.get("address")))
                self._active.discard(record["secret"])
                self.pool.release(sponsor)
                continue
            task = asyncio.create_task(self._run_pipeline(record, sponsor, config), name=f"pipeline-{short(sponsor.address)}")
            self._pipelines.add(task)
            task.add_done_callback(self._pipelines.discard)
            log.info("Assigned %s -> sponsor %s", short(record.get("address")), short(sponsor.address))
        return pairs

    def _pipeline(self, config: RunConfig) -> Pipeline:
        return Pipeline(
            gateway=self.gateway,
            store=self.store,
            pool=self.pool,
            alerts=self.alerts,
            config=config,
            funder=derive_wallet(config.funder_secret),
            on_funding=self._on_funding,
        )

    async def _run_pipeline(self, record: dict, sponsor: Sponsor, config: RunConfig) -> PipelineOutcome | None:
        try:
            return await self._pipeline(config).run(record, sponsor)
        except asyncio.CancelledError:
            raise
        except Exception:
            log.exception("Pipeline for %s crashed", short(record.get("address")))
            return None
        finally:
            self._active.discard(record["secret"])
            self.pool.release(sponsor)

    def _on_funding(self, ok: bool) -> None:
        if ok:
            if self.funding_failures:
                log.info("Funding recovered after %d consecutive failure(s)", self.funding_failures)
            self.funding_failures = 0
            return
        self.funding_failures += 1
        log.critical("Consecutive funding failures: %d. Funder may be exhausted or misconfigured.", self.funding_failures)

    async def maintain(self) -> int:
        if not self.running or self.pool is None or self.config is None:
            return 0
        return await maintain_sponsors(self.pool, self.gateway, self.funder, self.config, self._on_funding)

    # =========================================================================
    # Control surface
    # =========================================================================

    def status(self) -> dict:
        return {
            "running": self.running,
            "funder": self.funder.address if self.funder else None,
            "recipient": self.config.recipient if self.config else None,
            "concurrency": self.config.concurrency if self.config else None,
            "busy": self.pool.busy_count() if self.pool else 0,
            "in_flight": len(self._pipelines),
            "funding_failures": self.funding_failures,
            "sponsors": self.pool.snapshot() if self.pool else [],
        }

    async def schedule_new(self, secrets: Iterable[str]) -> IntakeStats:
        return await schedule_new(self.store, self.gateway, secrets)

    async def force_run(self, secret: str) -> str:
        """Run the whole pipeline for one wallet right now and return the outcome."""
        if not self.running:
            raise BotNotRunningError("bot is not running")
        record = await self.store.find(secret.strip())
        if record is None:
            raise WalletNotFoundError("wallet not found")
        if not validate_secret(record["secret"]):
            raise ControlError("wallet secret is invalid")
        # FAILED is the one terminal status an operator may retry
        status = record.get("status")
        if status in C.TERMINAL_STATUS and status != WalletStatus.FAILED:
            raise ControlError(f"wallet is {status}; finished wallets are not re-run")
        if record["secret"] in self._active:
            raise ControlError("wallet already has a pipeline running")
        available = self.pool.list_available()
        if not available:
            raise NoSponsorAvailableError("no sponsor available")

        sponsor = available[0]
        address = record.get("address") or derive_wallet(record["secret"]).address
        self.pool.acquire(sponsor, address)
        self._active.add(record["secret"])
        try:
            record = await self.store.upsert(record["secret"], address=address, status=WalletStatus.EXECUTING, sponsor=sponsor.address)
            log.info("Force run %s via sponsor %s", short(address), short(sponsor.address))
            outcome = await self._pipeline(self.config).run(record, sponsor)
        finally:
            self._active.discard(record["secret"])
            self.pool.release(sponsor)
        return f"{outcome.status}: {outcome.reason}"

    async def clear_wallets(self) -> int:
        if self._active:
            raise ControlError("pipelines are in flight; stop the bot and let them finish first")
        return await self.store.clear()

    async def wallet_details(self, address: str) -> dict:
        """Live ledger view of one address: balance, reserve and escrows payable to it."""
        account = await self.gateway.load_account(address)
        if not account.exists:
            return {"address": address, "exists": False}
        balances = await self.gateway.query_claimable_balances(address)
        reserve = await self.gateway.fetch_reserve()
        now = utcnow()
        owner_reserve = reserve.for_account(account.owner_count)
        return {
            "address": address,
            "exists": True,
            "balance": account.balance,
            "reserve": owner_reserve,
            "spendable": account.balance - owner_reserve,
            "escrows": [
                {
                    "id": b.id,
                    "owner": b.owner,
                    "amount": b.amount,
                    "finish_after": to_iso(b.finish_after),
                    "cancel_after": to_iso(b.cancel_after),
                    "unlocked": b.is_unlocked(now),
                }
                for b in balances
            ],
        }
