import asyncio
import logging
from collections.abc import Iterable
from dataclasses import asdict, dataclass

from claimfleet.constants import WalletStatus
from claimfleet.errors import LedgerError
from claimfleet.gateway import LedgerGateway
from claimfleet.keys import derive_wallet, normalize_secret, short, validate_secret
from claimfleet.scheduler import to_iso, utcnow
from claimfleet.store import WalletStore

log = logging.getLogger("claimfleet.intake")


@dataclass
class IntakeStats:
    scheduled: int = 0
    pending: int = 0
    invalid: int = 0
    inactive: int = 0
    duplicates: int = 0

    def as_dict(self) -> dict[str, int]:
        return asdict(self)


async def schedule_new(store: WalletStore, gateway: LedgerGateway, secrets: Iterable[str]) -> IntakeStats:
    """Classify raw secrets into INVALID / INACTIVE / SCHEDULED / PENDING records.

    Secrets already in the store (in any status) are counted as duplicates and
    left alone. Validation happens before any ledger call.
    """
    stats = IntakeStats()
    for raw in secrets:
        secret = normalize_secret(raw)
        if not secret:
            continue
        if await store.find(secret) is not None:
            stats.duplicates += 1
            continue
        if not validate_secret(secret):
            await store.upsert(secret, address=None, status=WalletStatus.INVALID, reason="malformed secret (bad checksum)")
            stats.invalid += 1
            continue

        address = derive_wallet(secret).address
        try:
            account = await gateway.load_account(address)
            if not account.exists:
                await store.upsert(secret, address=address, status=WalletStatus.INACTIVE, reason="account not found on ledger")
                stats.inactive += 1
                continue
            balances = await gateway.query_claimable_balances(address)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            reason = e.describe() if isinstance(e, LedgerError) else (str(e) or type(e).__name__)
            log.warning("Intake lookup failed for %s: %s", short(address), reason)
            await store.upsert(secret, address=address, status=WalletStatus.INVALID, reason=reason)
            stats.invalid += 1
            continue

        now = utcnow()
        upcoming = [b.finish_after for b in balances if b.unlocks_later(now)]
        if upcoming:
            unlock = min(upcoming)
            await store.upsert(secret, address=address, status=WalletStatus.SCHEDULED, unlock_time=to_iso(unlock), reason=None)
            stats.scheduled += 1
        else:
            await store.upsert(secret, address=address, status=WalletStatus.PENDING, unlock_time=None, reason="no upcoming unlock")
            stats.pending += 1

    log.info(
        "Intake: scheduled=%d pending=%d invalid=%d inactive=%d duplicates=%d",
        stats.scheduled, stats.pending, stats.invalid, stats.inactive, stats.duplicates,
    )
    return stats
