"""Shared test fixtures for the claimfleet test suite."""

from datetime import datetime, timedelta, timezone

import pytest
from xrpl.core.keypairs import generate_seed
from xrpl.models.transactions import EscrowFinish, Payment
from xrpl.wallet import Wallet

from claimfleet.config import RunConfig
from claimfleet.errors import LedgerError
from claimfleet.fee_info import ReserveInfo
from claimfleet.gateway import AccountState, ClaimableBalance
from claimfleet.keys import derive_wallet
from claimfleet.store import InMemoryWalletStore

BASE_RESERVE = 1_000_000
OWNER_RESERVE = 200_000
BASE_FEE = 10


def make_secret() -> str:
    return generate_seed()


def new_address() -> str:
    return Wallet.create().address


def address_of(secret: str) -> str:
    return derive_wallet(secret).address


def escrow(owner: str, amount: int, *, finish_in: timedelta | None = None, seq: int = 1, **kw) -> ClaimableBalance:
    finish_after = datetime.now(timezone.utc) + finish_in if finish_in is not None else None
    return ClaimableBalance(
        id=f"ESCROW-{owner[:6]}-{seq}",
        owner=owner,
        offer_sequence=seq,
        amount=amount,
        finish_after=finish_after,
        **kw,
    )


class FakeGateway:
    """In-memory ledger standing in for LedgerGateway.

    Applies payments and escrow finishes to its balances so tests can check
    where the drops went. Failures are scripted per source address.
    """

    def __init__(self) -> None:
        self.accounts: dict[str, AccountState] = {}
        self.escrows: dict[str, list[ClaimableBalance]] = {}
        self.reserve = ReserveInfo(base=BASE_RESERVE, increment=OWNER_RESERVE, validated_seq=100)
        self.base_fee = BASE_FEE
        self.submitted: list[dict] = []
        self.calls: list[tuple[str, str | None]] = []
        self.fail_submit: dict[str, Exception] = {}
        self.fail_load: dict[str, Exception] = {}
        self._n = 0

    def set_balance(self, address: str, drops: int, owner_count: int = 0) -> None:
        self.accounts[address] = AccountState(address=address, exists=True, balance=drops, owner_count=owner_count, sequence=1)

    def balance(self, address: str) -> int:
        acct = self.accounts.get(address)
        return acct.balance if acct else 0

    def _credit(self, address: str, drops: int) -> None:
        acct = self.accounts.get(address)
        if acct is None:
            self.set_balance(address, drops)
        else:
            self.set_balance(address, acct.balance + drops, acct.owner_count)

    def submits_from(self, address: str) -> list[dict]:
        return [s for s in self.submitted if s["source"] == address]

    async def load_account(self, address: str) -> AccountState:
        self.calls.append(("load_account", address))
        if address in self.fail_load:
            raise self.fail_load[address]
        return self.accounts.get(address) or AccountState(address=address, exists=False)

    async def query_claimable_balances(self, address: str) -> list[ClaimableBalance]:
        self.calls.append(("query_claimable_balances", address))
        return list(self.escrows.get(address, []))

    async def fetch_base_fee(self) -> int:
        self.calls.append(("fetch_base_fee", None))
        return self.base_fee

    async def fetch_reserve(self) -> ReserveInfo:
        self.calls.append(("fetch_reserve", None))
        return self.reserve

    async def submit(self, source: Wallet, operations, *, fee: int, cosigners=()) -> str:
        self.calls.append(("submit", source.address))
        self.submitted.append(
            {"source": source.address, "ops": list(operations), "fee": fee, "cosigners": [w.address for w in cosigners]}
        )
        if source.address in self.fail_submit:
            raise self.fail_submit[source.address]
        if source.address not in self.accounts:
            raise LedgerError.from_result("actNotFound")
        self._credit(source.address, -fee)
        for op in operations:
            if isinstance(op, Payment):
                self._credit(op.account, -int(op.amount))
                self._credit(op.destination, int(op.amount))
            elif isinstance(op, EscrowFinish):
                pending = self.escrows.get(op.account, [])
                done = [b for b in pending if b.owner == op.owner and b.offer_sequence == op.offer_sequence]
                for b in done:
                    pending.remove(b)
                    self._credit(op.account, b.amount)
        self._n += 1
        return f"{self._n:064X}"


class RecordingAlertSink:
    def __init__(self) -> None:
        self.messages: list[str] = []

    def notify(self, message: str) -> None:
        self.messages.append(message)

    async def close(self) -> None:
        pass


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def store() -> InMemoryWalletStore:
    return InMemoryWalletStore()


@pytest.fixture
def alerts() -> RecordingAlertSink:
    return RecordingAlertSink()


@pytest.fixture
def run_config() -> RunConfig:
    return RunConfig(
        recipient=Wallet.create().address,
        funder_secret=make_secret(),
        sponsor_secrets=[make_secret(), make_secret()],
        concurrency=2,
        task_funding_drops=100_000,
    )


@pytest.fixture
def funder(run_config, gateway) -> Wallet:
    wallet = derive_wallet(run_config.funder_secret)
    gateway.set_balance(wallet.address, 1_000_000_000)
    return wallet
