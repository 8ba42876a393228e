"""Ledger gateway: the only module that talks to rippled.

Requests are spread round-robin over a fixed list of JSON-RPC endpoints; any
endpoint may serve any call. Every rejection leaves this module as a
``LedgerError`` with a classified code, so callers never have to look at raw
rippled responses.
"""

import asyncio
import hashlib
import logging
from collections.abc import Sequence
from dataclasses import dataclass, replace
from datetime import datetime, timezone

from xrpl.asyncio.clients import AsyncJsonRpcClient
from xrpl.core.binarycodec import encode, encode_for_signing
from xrpl.core.keypairs import sign
from xrpl.models import SubmitOnly, Transaction, TransactionFlag
from xrpl.models.requests import AccountInfo, AccountObjects, AccountObjectType, Fee, ServerState, Tx
from xrpl.models.transactions import AccountSet, Batch, BatchFlag
from xrpl.transaction import sign_multiaccount_batch
from xrpl.utils import ripple_time_to_posix
from xrpl.wallet import Wallet

import claimfleet.constants as C
from claimfleet.errors import LedgerError, LedgerErrorCode
from claimfleet.fee_info import FeeInfo, ReserveInfo
from claimfleet.keys import short

log = logging.getLogger("claimfleet.gateway")


@dataclass(frozen=True)
class AccountState:
    address: str
    exists: bool
    balance: int = 0  # drops
    owner_count: int = 0
    sequence: int | None = None


@dataclass
class AccountRecord:
    lock: asyncio.Lock
    next_seq: int | None = None


@dataclass(frozen=True)
class ClaimableBalance:
    """An XRP escrow payable to the wallet we looked up."""

    id: str
    owner: str
    offer_sequence: int
    amount: int  # drops
    finish_after: datetime | None = None
    cancel_after: datetime | None = None
    has_condition: bool = False

    def is_unlocked(self, now: datetime) -> bool:
        """Claimable right now: no crypto-condition, not cancelled, FinishAfter passed."""
        if self.has_condition:
            return False
        if self.cancel_after is not None and self.cancel_after <= now:
            return False
        return self.finish_after is None or self.finish_after <= now

    def unlocks_later(self, now: datetime) -> bool:
        if self.has_condition or self.finish_after is None:
            return False
        if self.cancel_after is not None and self.cancel_after <= self.finish_after:
            return False
        return self.finish_after > now


def _sha512half(b: bytes) -> bytes:
    return hashlib.sha512(b).digest()[:32]


def _txid_from_blob_hex(blob_hex: str) -> str:
    # XRPL txid = SHA512Half(0x54584E00 || serialized_bytes)
    return _sha512half(bytes.fromhex("54584E00") + bytes.fromhex(blob_hex)).hex().upper()


def _ripple_time(value: int | None) -> datetime | None:
    if value is None:
        return None
    return datetime.fromtimestamp(ripple_time_to_posix(int(value)), tz=timezone.utc)


def update_transaction(transaction: Transaction, **kwargs) -> Transaction:
    payload = transaction.to_xrpl()
    payload.update(kwargs)
    return type(transaction).from_xrpl(payload)


def sign_tx_json(tx: dict, wallet: Wallet) -> tuple[str, str]:
    """Sign a fully filled tx_json in place. Returns (signed blob hex, txid)."""
    if tx.get("Flags") == 0:
        del tx["Flags"]
    tx["SigningPubKey"] = wallet.public_key
    signing_blob = encode_for_signing(tx)
    to_sign = signing_blob if isinstance(signing_blob, str) else signing_blob.hex()
    tx["TxnSignature"] = sign(to_sign, wallet.private_key)
    signed_blob_hex = encode(tx)
    return signed_blob_hex, _txid_from_blob_hex(signed_blob_hex)


class LedgerGateway:
    def __init__(
        self,
        urls: Sequence[str] = (),
        *,
        clients: Sequence[AsyncJsonRpcClient] | None = None,
        rpc_timeout: float = C.RPC_TIMEOUT,
        submit_timeout: float = C.SUBMIT_TIMEOUT,
        horizon: int = C.HORIZON,
    ):
        self.clients = list(clients) if clients else [AsyncJsonRpcClient(u) for u in urls]
        if not self.clients:
            raise ValueError("LedgerGateway needs at least one rippled endpoint")
        self.rpc_timeout = rpc_timeout
        self.submit_timeout = submit_timeout
        self.horizon = horizon
        self._rotation = 0
        # escrow id -> OfferSequence. Escrows never change once created, so this never goes stale.
        self._escrow_sequences: dict[str, int] = {}
        self.accounts: dict[str, AccountRecord] = {}

    def _client(self) -> AsyncJsonRpcClient:
        client = self.clients[self._rotation]
        self._rotation = (self._rotation + 1) % len(self.clients)
        return client

    async def _rpc(self, req, *, client: AsyncJsonRpcClient | None = None, t: float | None = None):
        client = client or self._client()
        return await asyncio.wait_for(client.request(req), timeout=t or self.rpc_timeout)

    # =========================================================================
    # Queries
    # =========================================================================

    async def load_account(self, address: str) -> AccountState:
        r = await self._rpc(AccountInfo(account=address, ledger_index="validated"))
        if not r.is_successful():
            err = r.result.get("error")
            if err == "actNotFound":
                return AccountState(address=address, exists=False)
            raise LedgerError.from_result(err, r.result.get("error_message"))
        data = r.result["account_data"]
        return AccountState(
            address=address,
            exists=True,
            balance=int(data["Balance"]),
            owner_count=int(data.get("OwnerCount", 0)),
            sequence=int(data["Sequence"]),
        )

    async def query_claimable_balances(self, address: str) -> list[ClaimableBalance]:
        """Every XRP escrow whose destination is ``address``, locked or not."""
        client = self._client()
        out: list[ClaimableBalance] = []
        marker = None
        while True:
            r = await self._rpc(
                AccountObjects(
                    account=address,
                    ledger_index="validated",
                    type=AccountObjectType.ESCROW,
                    limit=C.CLAIMABLE_PAGE_LIMIT,
                    marker=marker,
                ),
                client=client,
            )
            if not r.is_successful():
                err = r.result.get("error")
                if err == "actNotFound":
                    return []
                raise LedgerError.from_result(err, r.result.get("error_message"))

            for obj in r.result.get("account_objects", []):
                if obj.get("Destination") != address or not isinstance(obj.get("Amount"), str):
                    continue  # escrows we created, or token escrows
                out.append(
                    ClaimableBalance(
                        id=obj["index"],
                        owner=obj["Account"],
                        offer_sequence=await self._escrow_sequence(obj, client),
                        amount=int(obj["Amount"]),
                        finish_after=_ripple_time(obj.get("FinishAfter")),
                        cancel_after=_ripple_time(obj.get("CancelAfter")),
                        has_condition="Condition" in obj,
                    )
                )

            marker = r.result.get("marker")
            if not marker:
                break
        log.debug("%s has %d escrow(s) payable to it", short(address), len(out))
        return out

    async def _escrow_sequence(self, obj: dict, client: AsyncJsonRpcClient) -> int:
        """OfferSequence for EscrowFinish: the Sequence (or Ticket) of the EscrowCreate."""
        escrow_id = obj["index"]
        if escrow_id in self._escrow_sequences:
            return self._escrow_sequences[escrow_id]
        r = await self._rpc(Tx(transaction=obj["PreviousTxnID"]), client=client)
        tx = r.result.get("tx_json", r.result)
        if not r.is_successful() or tx.get("TransactionType") != "EscrowCreate":
            raise LedgerError(LedgerErrorCode.OTHER, message=f"cannot resolve creating transaction of escrow {escrow_id}")
        seq = tx.get("Sequence") or tx.get("TicketSequence")
        self._escrow_sequences[escrow_id] = int(seq)
        return int(seq)

    async def get_fee_info(self) -> FeeInfo:
        r = await self._rpc(Fee())
        return FeeInfo.from_fee_result(r.result)

    async def fetch_base_fee(self) -> int:
        """Per-signature fee to use right now, in drops.

        Uses minimum_fee (what gets into the queue), which is the base fee
        unless the queue is filling up. Refuses to go above MAX_FEE_DROPS.
        """
        fee_info = await self.get_fee_info()
        fee = max(fee_info.minimum_fee, fee_info.base_fee)
        if fee > fee_info.base_fee:
            log.warning("Queue fees escalated: minimum=%s open_ledger=%s base=%s",
                        fee_info.minimum_fee, fee_info.open_ledger_fee, fee_info.base_fee)
        if fee > C.MAX_FEE_DROPS:
            raise LedgerError(
                LedgerErrorCode.OTHER,
                message=f"fee too high ({fee} drops > {C.MAX_FEE_DROPS} max), refusing to submit",
            )
        return fee

    async def fetch_reserve(self) -> ReserveInfo:
        r = await self._rpc(ServerState())
        return ReserveInfo.from_server_state(r.result)

    def _record_for(self, address: str) -> AccountRecord:
        rec = self.accounts.get(address)
        if rec is None:
            rec = AccountRecord(lock=asyncio.Lock())
            self.accounts[address] = rec
        return rec

    async def alloc_seq(self, address: str, client: AsyncJsonRpcClient, count: int = 1) -> int:
        """Reserve ``count`` consecutive sequences for ``address``; returns the first.

        Allocation is serialized per account, so concurrent submitters from
        the same account (the funder, mostly) never sign with the same Sequence.
        """
        rec = self._record_for(address)
        async with rec.lock:
            if rec.next_seq is None:
                # "current" so queued-but-unvalidated txns are counted
                r = await self._rpc(AccountInfo(account=address, ledger_index="current"), client=client)
                if not r.is_successful():
                    raise LedgerError.from_result(r.result.get("error"), r.result.get("error_message"))
                rec.next_seq = int(r.result["account_data"]["Sequence"])
            seq = rec.next_seq
            rec.next_seq += count
            return seq

    def resync(self, *addresses: str) -> None:
        """Forget cached sequences; the next allocation reads them from the ledger again."""
        for address in addresses:
            rec = self.accounts.get(address)
            if rec is not None and rec.next_seq is not None:
                log.debug("Resync sequence for %s (was %s)", short(address), rec.next_seq)
                rec.next_seq = None

    async def _validated_seq(self, client: AsyncJsonRpcClient) -> int:
        ss = await self._rpc(ServerState(), client=client)
        return int(ss.result["state"]["validated_ledger"]["seq"])

    # =========================================================================
    # Submission
    # =========================================================================

    async def submit(
        self,
        source: Wallet,
        operations: Sequence[Transaction],
        *,
        fee: int,
        cosigners: Sequence[Wallet] = (),
    ) -> str:
        """Build, sign, submit and wait for validation. Returns the tx hash.

        A single operation sourced from ``source`` goes out as a plain
        transaction. Anything else (operations sourced from other accounts,
        or several operations) is wrapped in an all-or-nothing Batch that
        ``source`` submits and pays for; every other account that sources an
        inner operation must be in ``cosigners``.

        Sequences come from the per-account allocator. Any failure resyncs the
        accounts involved; a tefPAST_SEQ (stale cached sequence) is retried once.
        """
        if not operations:
            raise ValueError("submit() needs at least one operation")
        ops = list(operations)
        plain = len(ops) == 1 and not cosigners and ops[0].account == source.address
        if not plain:
            signer_addresses = {w.address for w in cosigners}
            for op in ops:
                if op.account != source.address and op.account not in signer_addresses:
                    raise ValueError(f"operation sourced from {op.account} has no cosigner")
            if len(ops) < 2:
                # A Batch carries at least two inner txns; pad with a no-op from the submitter
                ops.append(AccountSet(account=source.address))
        involved = list(dict.fromkeys([source.address, *(op.account for op in ops)]))

        client = self._client()
        for attempt in (1, 2):
            try:
                return await self._submit_once(source, ops, cosigners, plain=plain, fee=fee, client=client)
            except LedgerError as e:
                self.resync(*involved)
                if e.engine_result == "tefPAST_SEQ" and attempt == 1:
                    log.warning("tefPAST_SEQ from %s; sequence resynced, retrying", short(source.address))
                    continue
                raise
            except (Exception, asyncio.CancelledError):
                self.resync(*involved)
                raise

    async def _submit_once(
        self,
        source: Wallet,
        ops: list[Transaction],
        cosigners: Sequence[Wallet],
        *,
        plain: bool,
        fee: int,
        client: AsyncJsonRpcClient,
    ) -> str:
        # sequences each account consumes: the outer Batch takes the submitter's first one
        counts: dict[str, int] = {source.address: 0 if plain else 1}
        for op in ops:
            counts[op.account] = counts.get(op.account, 0) + 1
        next_seq = {acct: await self.alloc_seq(acct, client, n) for acct, n in counts.items()}
        seq = next_seq[source.address]
        lls = await self._validated_seq(client) + self.horizon

        if plain:
            tx = ops[0].to_xrpl()
            tx.update(Sequence=seq, Fee=str(fee), LastLedgerSequence=lls)
            inner_ids: list[str] = []
        else:
            next_seq[source.address] += 1
            batch, inner_ids = self._build_batch(source, ops, cosigners, next_seq, seq=seq, fee=fee, lls=lls)
            tx = batch.to_xrpl()

        blob, txid = sign_tx_json(tx, source)
        log.debug("Submitting %s from %s seq=%s fee=%s lls=%s hash=%s",
                  tx.get("TransactionType"), short(source.address), seq, tx["Fee"], lls, txid)
        tx_hash = await self._submit_and_wait(client, blob, txid, lls)
        for inner_id in inner_ids:
            await self._check_inner(client, inner_id)
        return tx_hash

    def _build_batch(
        self,
        source: Wallet,
        ops: list[Transaction],
        cosigners: Sequence[Wallet],
        next_seq: dict[str, int],
        *,
        seq: int,
        fee: int,
        lls: int,
    ) -> tuple[Batch, list[str]]:
        raw: list[Transaction] = []
        inner_ids: list[str] = []
        for op in ops:
            inner = update_transaction(
                op,
                Flags=int(op.to_xrpl().get("Flags", 0)) | TransactionFlag.TF_INNER_BATCH_TXN,
                Fee="0",
                SigningPubKey="",
                Sequence=next_seq[op.account],
            )
            next_seq[op.account] += 1
            raw.append(inner)
            inner_ids.append(_txid_from_blob_hex(encode(inner.to_xrpl())))

        # 2x base for the outer txn, one base per inner txn and per batch signer
        total_fee = fee * (2 + len(raw) + len(cosigners))
        batch = Batch(
            account=source.address,
            flags=BatchFlag.TF_ALL_OR_NOTHING,
            raw_transactions=raw,
            sequence=seq,
            fee=str(total_fee),
            last_ledger_sequence=lls,
        )
        signers = []
        for w in cosigners:
            signers.extend(sign_multiaccount_batch(w, batch).batch_signers or [])
        if signers:
            batch = replace(batch, batch_signers=signers)
        log.debug("Batch fee: %s*(2+%s+%s) = %s drops", fee, len(raw), len(cosigners), total_fee)
        return batch, inner_ids

    async def _submit_and_wait(self, client: AsyncJsonRpcClient, blob: str, txid: str, lls: int) -> str:
        resp = await self._rpc(SubmitOnly(tx_blob=blob), client=client)
        res = resp.result
        if not resp.is_successful():
            raise LedgerError.from_result(res.get("error"), res.get("error_message"))

        er = res.get("engine_result")
        if isinstance(er, str) and er.startswith(("tem", "tef")):
            # terminal reject, never applied
            raise LedgerError.from_result(er, res.get("engine_result_message"))
        if isinstance(er, str) and er.startswith("tel"):
            # local rejection, the server may still relay it; track until expiry
            log.warning("tel* (may retry): %s for %s", er, txid)

        tx_hash = res.get("tx_json", {}).get("hash") or txid
        result = await self._wait_until_validated(client, tx_hash, lls, first_result=er)
        meta_result = result["meta"]["TransactionResult"]
        if meta_result != "tesSUCCESS":
            raise LedgerError.from_result(meta_result)
        log.debug("Validated %s in ledger %s", tx_hash, result.get("ledger_index"))
        return tx_hash

    async def _wait_until_validated(self, client: AsyncJsonRpcClient, tx_hash: str, lls: int, *, first_result: str | None) -> dict:
        try:
            async with asyncio.timeout(self.submit_timeout):
                while True:
                    r = await self._rpc(Tx(transaction=tx_hash), client=client)
                    result = r.result
                    if result.get("validated"):
                        meta = result.get("meta")
                        if not isinstance(meta, dict) or "TransactionResult" not in meta:
                            raise LedgerError(LedgerErrorCode.OTHER, message=f"validated response missing meta for {tx_hash}")
                        return result
                    if await self._validated_seq(client) > lls:
                        raise self._expired(tx_hash, first_result)
                    await asyncio.sleep(C.POLL_INTERVAL)
        except TimeoutError:
            log.warning("Validation timeout tx=%s after %.1fs", tx_hash, self.submit_timeout)
            raise self._expired(tx_hash, first_result) from None

    @staticmethod
    def _expired(tx_hash: str, first_result: str | None) -> LedgerError:
        # A tel* result explains the expiry better than a bare timeout
        if isinstance(first_result, str) and first_result.startswith("tel"):
            return LedgerError.from_result(first_result)
        return LedgerError(LedgerErrorCode.TIMEOUT, message=f"transaction {tx_hash[:12]} was not validated in time")

    async def _check_inner(self, client: AsyncJsonRpcClient, inner_id: str) -> None:
        """An all-or-nothing batch can validate with its inner txns skipped; make sure they landed."""
        r = await self._rpc(Tx(transaction=inner_id), client=client)
        result = r.result
        meta_result = (result.get("meta") or {}).get("TransactionResult") if result.get("validated") else None
        if meta_result == "tesSUCCESS":
            return
        if meta_result:
            raise LedgerError.from_result(meta_result)
        raise LedgerError(LedgerErrorCode.OTHER, message=f"batch inner transaction {inner_id[:12]} was not applied")
