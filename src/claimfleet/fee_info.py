"""Fee and reserve snapshots parsed from rippled responses."""

from dataclasses import dataclass


@dataclass
class FeeInfo:
    """Current fee state from the rippled ``fee`` command. All values in drops."""

    base_fee: int
    median_fee: int
    minimum_fee: int
    open_ledger_fee: int
    ledger_current_index: int

    @classmethod
    def from_fee_result(cls, result: dict) -> "FeeInfo":
        drops = result["drops"]
        return cls(
            base_fee=int(drops["base_fee"]),
            median_fee=int(drops["median_fee"]),
            minimum_fee=int(drops["minimum_fee"]),
            open_ledger_fee=int(drops["open_ledger_fee"]),
            ledger_current_index=int(result["ledger_current_index"]),
        )


@dataclass(frozen=True)
class ReserveInfo:
    """Account reserve requirements of the last validated ledger, in drops."""

    base: int
    increment: int
    validated_seq: int

    @classmethod
    def from_server_state(cls, result: dict) -> "ReserveInfo":
        # server_state reports drops (server_info would report XRP)
        vl = result["state"]["validated_ledger"]
        return cls(
            base=int(vl["reserve_base"]),
            increment=int(vl["reserve_inc"]),
            validated_seq=int(vl["seq"]),
        )

    def for_account(self, owner_count: int) -> int:
        return self.base + owner_count * self.increment
