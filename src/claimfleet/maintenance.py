import asyncio
import logging
from collections.abc import Callable

from xrpl.wallet import Wallet

import claimfleet.constants as C
from claimfleet.config import RunConfig
from claimfleet.gateway import LedgerGateway
from claimfleet.pipeline import ensure_funded
from claimfleet.sponsors import SponsorPool

log = logging.getLogger("claimfleet.maintenance")


async def maintain_sponsors(
    pool: SponsorPool,
    gateway: LedgerGateway,
    funder: Wallet,
    config: RunConfig,
    on_funding: Callable[[bool], None] | None = None,
) -> int:
    """One pass: apply the fund check to every idle sponsor. Returns how many got funds.

    The sponsor stays available while it is checked; it is only flagged
    ``maintaining``. Assignment may still hand it to a pipeline, whose own
    fund check then runs alongside this one.
    """
    funded = 0
    for sponsor in pool.list_available():
        if sponsor.is_busy or sponsor.maintaining:
            continue  # picked up by assignment while we were awaiting
        sponsor.maintaining = True
        try:
            if await ensure_funded(gateway, funder, sponsor.address, config):
                funded += 1
            if on_funding:
                on_funding(True)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            log.error("[maintenance] funding sponsor %s failed: %s", sponsor.address, e)
            if on_funding:
                on_funding(False)
        finally:
            sponsor.maintaining = False
    return funded


async def periodic_maintenance(orchestrator, stop: asyncio.Event, interval: float = C.MAINTENANCE_INTERVAL):
    while not stop.is_set():
        try:
            await orchestrator.maintain()
            await asyncio.sleep(interval)
        except asyncio.CancelledError:
            raise
        except Exception:
            log.exception("[maintenance] outer loop error; continuing")
            await asyncio.sleep(0.5)
