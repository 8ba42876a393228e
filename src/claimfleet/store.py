import asyncio
import logging
import time
from collections import Counter
from typing import Protocol

from claimfleet.constants import WalletStatus

log = logging.getLogger("claimfleet.store")


class WalletStore(Protocol):
    """Wallet records keyed by secret. Records are flat dicts:

    ``secret``, ``address``, ``status``, ``unlock_time`` (ISO-8601 UTC or None),
    ``sponsor`` (address or None), ``reason``, ``created_at``, ``updated_at``.
    """

    async def find(self, secret: str) -> dict | None: ...
    async def upsert(self, secret: str, **fields) -> dict: ...
    async def list_by_status(self, *statuses: WalletStatus | str) -> list[dict]: ...
    async def list_all(self) -> list[dict]: ...
    async def summary_counts(self) -> dict[str, int]: ...
    async def clear(self) -> int: ...


def _normalize(fields: dict) -> dict:
    status = fields.get("status")
    if isinstance(status, WalletStatus):
        fields["status"] = status.value
    return fields


def summarize(statuses) -> dict[str, int]:
    counts = Counter(statuses)
    return {s.value: counts.get(s.value, 0) for s in WalletStatus}


class InMemoryWalletStore:
    """Dict-backed store. Python dicts keep insertion order, which is the assignment order."""

    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self._records: dict[str, dict] = {}

    async def find(self, secret: str) -> dict | None:
        async with self._lock:
            rec = self._records.get(secret)
            return dict(rec) if rec is not None else None

    async def upsert(self, secret: str, **fields) -> dict:
        """Merge ``fields`` into the record for ``secret``, creating it if needed."""
        if not secret:
            raise ValueError("upsert() requires a secret")
        async with self._lock:
            now = time.time()
            rec = self._records.get(secret)
            if rec is None:
                rec = {"secret": secret, "created_at": now}
                self._records[secret] = rec
            prev = rec.get("status")
            rec.update(_normalize(fields))
            rec["secret"] = secret
            rec["updated_at"] = now
            if prev != rec.get("status"):
                log.debug("%s --> %s  %s", prev, rec.get("status"), rec.get("address"))
            return dict(rec)

    async def list_by_status(self, *statuses: WalletStatus | str) -> list[dict]:
        wanted = {str(s) for s in statuses}
        async with self._lock:
            return [dict(r) for r in self._records.values() if r.get("status") in wanted]

    async def list_all(self) -> list[dict]:
        async with self._lock:
            return [dict(r) for r in self._records.values()]

    async def summary_counts(self) -> dict[str, int]:
        async with self._lock:
            return summarize(r.get("status") for r in self._records.values())

    async def clear(self) -> int:
        async with self._lock:
            n = len(self._records)
            self._records.clear()
        log.info("Cleared %d wallet record(s)", n)
        return n
