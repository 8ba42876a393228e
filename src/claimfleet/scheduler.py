import logging
from datetime import datetime, timedelta, timezone

import claimfleet.constants as C
from claimfleet.constants import WalletStatus
from claimfleet.keys import short
from claimfleet.store import WalletStore

log = logging.getLogger("claimfleet.scheduler")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(ts: datetime | None) -> str | None:
    return ts.astimezone(timezone.utc).isoformat() if ts else None


def parse_iso(value: str | None) -> datetime | None:
    if not value:
        return None
    ts = datetime.fromisoformat(value)
    return ts if ts.tzinfo else ts.replace(tzinfo=timezone.utc)


async def promote_due(
    store: WalletStore,
    now: datetime | None = None,
    lookahead: timedelta = timedelta(minutes=C.LOOKAHEAD_MINUTES),
) -> list[dict]:
    """Move SCHEDULED/PENDING wallets that unlock within ``lookahead`` to AWAITING_EXECUTION.

    A wallet with no unlock time is due now. Returns the promoted records.
    """
    now = now or utcnow()
    horizon = now + lookahead
    promoted = []
    for rec in await store.list_by_status(*C.SCHEDULABLE_STATUS):
        effective = parse_iso(rec.get("unlock_time")) or now
        if effective <= horizon:
            promoted.append(await store.upsert(rec["secret"], status=WalletStatus.AWAITING_EXECUTION))
            log.info("Promoted %s (unlock %s)", short(rec.get("address")), rec.get("unlock_time") or "now")
    return promoted
