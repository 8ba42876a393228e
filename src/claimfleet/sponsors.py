import logging
from dataclasses import dataclass, field

from xrpl.wallet import Wallet

from claimfleet.constants import PipelinePhase
from claimfleet.keys import derive_wallet, short

log = logging.getLogger("claimfleet.sponsors")


@dataclass
class Sponsor:
    wallet: Wallet
    is_busy: bool = False
    phase: PipelinePhase | None = None
    wallet_address: str | None = None  # target the sponsor is bound to while busy
    maintaining: bool = False  # fund check by the maintenance loop in progress; not a claim on the sponsor
    address: str = field(init=False)

    def __post_init__(self) -> None:
        self.address = self.wallet.address

    @classmethod
    def from_secret(cls, secret: str) -> "Sponsor":
        return cls(wallet=derive_wallet(secret))

    def snapshot(self) -> dict:
        return {
            "address": self.address,
            "busy": self.is_busy,
            "phase": self.phase.value if self.phase else None,
            "wallet": self.wallet_address,
            "maintaining": self.maintaining,
        }


class SponsorPool:
    """Fixed set of sponsors. ``acquire`` and ``release`` never await, so a
    caller that reads ``list_available()`` and acquires in the same step
    cannot race another coroutine on the event loop.
    """

    def __init__(self, sponsors: list[Sponsor]) -> None:
        self.sponsors = sponsors

    @classmethod
    def from_secrets(cls, secrets: list[str]) -> "SponsorPool":
        return cls([Sponsor.from_secret(s) for s in secrets])

    def __len__(self) -> int:
        return len(self.sponsors)

    def __iter__(self):
        return iter(self.sponsors)

    def list_available(self) -> list[Sponsor]:
        return [s for s in self.sponsors if not s.is_busy]

    def busy_count(self) -> int:
        return sum(1 for s in self.sponsors if s.is_busy)

    def acquire(self, sponsor: Sponsor, wallet_address: str | None = None) -> None:
        if sponsor.is_busy:
            raise RuntimeError(f"sponsor {sponsor.address} is already busy")
        sponsor.is_busy = True
        sponsor.wallet_address = wallet_address
        sponsor.phase = None
        log.debug("Acquired sponsor %s for %s", short(sponsor.address), short(wallet_address))

    def release(self, sponsor: Sponsor) -> None:
        """Idempotent."""
        if sponsor.is_busy:
            log.debug("Released sponsor %s", short(sponsor.address))
        sponsor.is_busy = False
        sponsor.wallet_address = None
        sponsor.phase = None

    def snapshot(self) -> list[dict]:
        return [s.snapshot() for s in self.sponsors]
