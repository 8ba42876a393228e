"""Fund -> execute -> sweep -> finalize for one (wallet, sponsor) pair.

The pipeline never raises: every exit path goes through ``finalize``, which
writes the terminal status and hands the sponsor back to the pool.
"""

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass

from xrpl.models.transactions import EscrowFinish, Memo, Payment
from xrpl.wallet import Wallet

import claimfleet.constants as C
from claimfleet.alerts import AlertSink
from claimfleet.config import RunConfig
from claimfleet.constants import PipelinePhase, WalletStatus
from claimfleet.errors import FundingError, LedgerError, LedgerErrorCode, NothingToClaimError
from claimfleet.gateway import ClaimableBalance, LedgerGateway
from claimfleet.keys import derive_wallet, short
from claimfleet.scheduler import utcnow
from claimfleet.sponsors import Sponsor, SponsorPool
from claimfleet.store import WalletStore

log = logging.getLogger("claimfleet.pipeline")


@dataclass
class PipelineOutcome:
    status: WalletStatus
    reason: str
    tx_hash: str | None = None
    swept: int | None = None  # drops returned to the funder, None when sweep didn't run


async def ensure_funded(gateway: LedgerGateway, funder: Wallet, address: str, config: RunConfig) -> int:
    """Make sure ``address`` can spend ``task_funding_drops`` above its reserve.

    Creates the account when it doesn't exist yet. Returns the drops sent,
    0 when the account was already funded.
    """
    account = await gateway.load_account(address)
    reserve = await gateway.fetch_reserve()
    need = config.task_funding_drops
    if not account.exists:
        amount = max(config.sponsor_starting_drops or 0, reserve.base + need)
        log.info("Creating sponsor %s with %s drops", short(address), amount)
    else:
        spendable = account.balance - reserve.for_account(account.owner_count)
        if spendable >= need:
            log.debug("Sponsor %s already funded (spendable=%s)", short(address), spendable)
            return 0
        amount = need - spendable
        log.info("Topping up sponsor %s by %s drops (spendable=%s)", short(address), amount, spendable)
    fee = await gateway.fetch_base_fee()
    payment = Payment(account=funder.address, destination=address, amount=str(amount))
    await gateway.submit(funder, [payment], fee=fee)
    return amount


def _chunks(claims: list[ClaimableBalance], size: int) -> list[list[ClaimableBalance]]:
    return [claims[i:i + size] for i in range(0, len(claims), size)]


class Pipeline:
    def __init__(
        self,
        *,
        gateway: LedgerGateway,
        store: WalletStore,
        pool: SponsorPool,
        alerts: AlertSink,
        config: RunConfig,
        funder: Wallet,
        on_funding: Callable[[bool], None] | None = None,
    ):
        self.gateway = gateway
        self.store = store
        self.pool = pool
        self.alerts = alerts
        self.config = config  # snapshot taken when the run started
        self.funder = funder
        self.on_funding = on_funding

    async def run(self, record: dict, sponsor: Sponsor) -> PipelineOutcome:
        secret = record["secret"]
        address = record.get("address")
        outcome = PipelineOutcome(WalletStatus.FAILED, "pipeline did not complete")
        try:
            sponsor.phase = PipelinePhase.FUND
            try:
                await self.fund(sponsor)
            except FundingError as e:
                outcome.reason = str(e)
                log.critical("%s for sponsor %s (wallet %s)", e, sponsor.address, short(address))
                return outcome

            sponsor.phase = PipelinePhase.EXECUTE
            try:
                outcome.tx_hash = await self.execute(record, sponsor)
                outcome.status = WalletStatus.SUCCESS
                outcome.reason = outcome.tx_hash
                log.info("Executed %s via %s: %s", short(address), short(sponsor.address), outcome.tx_hash)
            except LedgerError as e:
                outcome.reason = e.describe()
                log.error("Execute failed for %s: %s", short(address), outcome.reason)
            except NothingToClaimError as e:
                outcome.reason = str(e)
                log.warning("Execute skipped for %s: %s", short(address), outcome.reason)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                outcome.reason = str(e) or type(e).__name__
                log.exception("Execute crashed for %s", short(address))

            sponsor.phase = PipelinePhase.SWEEP
            outcome.swept = await self.sweep_safely(sponsor)
            return outcome
        finally:
            sponsor.phase = PipelinePhase.FINALIZE
            await self.finalize(secret, sponsor, outcome)

    async def fund(self, sponsor: Sponsor) -> int:
        try:
            sent = await ensure_funded(self.gateway, self.funder, sponsor.address, self.config)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            if self.on_funding:
                self.on_funding(False)
            raise FundingError(e) from e
        if self.on_funding:
            self.on_funding(True)
        return sent

    async def execute(self, record: dict, sponsor: Sponsor) -> str:
        """Claim every unlocked escrow and forward everything above the reserve.

        Returns the hash of the (last) sponsor transaction.
        """
        wallet = derive_wallet(record["secret"])
        account = await self.gateway.load_account(wallet.address)
        if not account.exists:
            raise LedgerError(LedgerErrorCode.NO_DESTINATION, "actNotFound", "wallet account does not exist")

        now = utcnow()
        unlocked = [b for b in await self.gateway.query_claimable_balances(wallet.address) if b.is_unlocked(now)]
        reserve = await self.gateway.fetch_reserve()
        wallet_reserve = reserve.for_account(account.owner_count)
        sendable = account.balance + sum(b.amount for b in unlocked) - wallet_reserve
        if not unlocked and sendable <= 0:
            raise NothingToClaimError()

        claims = [
            EscrowFinish(account=wallet.address, owner=b.owner, offer_sequence=b.offer_sequence)
            for b in unlocked
        ]
        payment = []
        if sendable > 0:
            memos = [Memo(memo_data=self.config.memo.encode().hex())] if self.config.memo else None
            payment = [Payment(account=wallet.address, destination=self.config.recipient, amount=str(sendable), memos=memos)]

        # A Batch holds a bounded number of inner txns; claims spill over into
        # extra batches and the payment rides with the last one.
        size = C.MAX_BATCH_INNER
        groups = _chunks(claims, size) or [[]]
        if payment and len(groups[-1]) == size:
            groups.append([])
        groups[-1] = groups[-1] + payment

        fee = await self.gateway.fetch_base_fee()
        log.info(
            "Executing %s: %d claim(s), send %s drops to %s",
            short(wallet.address), len(claims), max(sendable, 0), short(self.config.recipient),
        )
        tx_hash = ""
        for ops in groups:
            tx_hash = await self.gateway.submit(sponsor.wallet, ops, fee=fee, cosigners=[wallet])
        return tx_hash

    async def sweep(self, sponsor: Sponsor) -> int:
        """Send the sponsor's spendable balance, minus one fee, back to the funder."""
        account = await self.gateway.load_account(sponsor.address)
        if not account.exists:
            return 0
        reserve = await self.gateway.fetch_reserve()
        fee = await self.gateway.fetch_base_fee()
        amount = account.balance - reserve.for_account(account.owner_count) - fee
        if amount <= 0:
            log.debug("Nothing to sweep from %s", short(sponsor.address))
            return 0
        payment = Payment(account=sponsor.address, destination=self.funder.address, amount=str(amount))
        await self.gateway.submit(sponsor.wallet, [payment], fee=fee)
        log.info("Swept %s drops from %s back to funder", amount, short(sponsor.address))
        return amount

    async def sweep_safely(self, sponsor: Sponsor) -> int | None:
        try:
            return await self.sweep(sponsor)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            reason = e.describe() if isinstance(e, LedgerError) else (str(e) or type(e).__name__)
            log.error("Sweep failed for sponsor %s: %s", sponsor.address, reason)
            self.alerts.notify(f"SWEEP FAILED for sponsor {sponsor.address}: {reason}. Funds may be stuck, check manually.")
            return None

    async def finalize(self, secret: str, sponsor: Sponsor, outcome: PipelineOutcome) -> None:
        try:
            await self.store.upsert(secret, status=outcome.status, reason=outcome.reason)
        finally:
            self.pool.release(sponsor)
