"""Exception types shared by the gateway, the pipeline and the control surface."""

from enum import StrEnum


class LedgerErrorCode(StrEnum):
    INSUFFICIENT_BALANCE = "INSUFFICIENT_BALANCE"
    BAD_AUTH             = "BAD_AUTH"
    UNDERFUNDED          = "UNDERFUNDED"
    NO_DESTINATION       = "NO_DESTINATION"
    TIMEOUT              = "TIMEOUT"
    OTHER                = "OTHER"


_CODES_BY_RESULT: dict[str, LedgerErrorCode] = {
    "tecINSUFFICIENT_RESERVE": LedgerErrorCode.INSUFFICIENT_BALANCE,
    "tecINSUFF_FEE":           LedgerErrorCode.INSUFFICIENT_BALANCE,
    "terINSUF_FEE_B":          LedgerErrorCode.INSUFFICIENT_BALANCE,
    "telINSUF_FEE_P":          LedgerErrorCode.INSUFFICIENT_BALANCE,
    "tefBAD_AUTH":             LedgerErrorCode.BAD_AUTH,
    "tefBAD_AUTH_MASTER":      LedgerErrorCode.BAD_AUTH,
    "tefMASTER_DISABLED":      LedgerErrorCode.BAD_AUTH,
    "tefBAD_SIGNATURE":        LedgerErrorCode.BAD_AUTH,
    "tefBAD_QUORUM":           LedgerErrorCode.BAD_AUTH,
    "temBAD_SIGNATURE":        LedgerErrorCode.BAD_AUTH,
    "temBAD_SIGNER":           LedgerErrorCode.BAD_AUTH,
    "tecUNFUNDED_PAYMENT":     LedgerErrorCode.UNDERFUNDED,
    "tecUNFUNDED":             LedgerErrorCode.UNDERFUNDED,
    "tecNO_DST_INSUF_XRP":     LedgerErrorCode.UNDERFUNDED,
    "tecNO_DST":               LedgerErrorCode.NO_DESTINATION,
    "actNotFound":             LedgerErrorCode.NO_DESTINATION,
}

_DESCRIPTIONS: dict[LedgerErrorCode, str] = {
    LedgerErrorCode.INSUFFICIENT_BALANCE: "insufficient balance for reserve or fee",
    LedgerErrorCode.BAD_AUTH:             "bad signature or unauthorized signer",
    LedgerErrorCode.UNDERFUNDED:          "source account is underfunded",
    LedgerErrorCode.NO_DESTINATION:       "destination account does not exist",
    LedgerErrorCode.TIMEOUT:              "transaction was not validated in time",
    LedgerErrorCode.OTHER:                "transaction rejected",
}


def code_for_result(engine_result: str | None) -> LedgerErrorCode:
    if not engine_result:
        return LedgerErrorCode.OTHER
    return _CODES_BY_RESULT.get(engine_result, LedgerErrorCode.OTHER)


class ClaimFleetError(Exception):
    """Base for everything raised on purpose by this package."""


class LedgerError(ClaimFleetError):
    """A structured rejection from the ledger, classified once at the gateway.

    ``engine_result`` is the raw rippled code (``tecUNFUNDED_PAYMENT``,
    ``actNotFound``...) when there is one.
    """

    def __init__(self, code: LedgerErrorCode, engine_result: str | None = None, message: str | None = None):
        self.code = code
        self.engine_result = engine_result
        self.message = message or _DESCRIPTIONS[code]
        super().__init__(self.describe())

    @classmethod
    def from_result(cls, engine_result: str | None, message: str | None = None) -> "LedgerError":
        return cls(code_for_result(engine_result), engine_result, message)

    def describe(self) -> str:
        """Human readable reason stored on the wallet record."""
        if self.engine_result:
            return f"{self.message} ({self.engine_result})"
        return self.message


class FundingError(ClaimFleetError):
    """Sponsor could not be funded. Critical: usually means the funder itself is exhausted."""

    def __init__(self, cause: Exception):
        self.cause = cause
        reason = cause.describe() if isinstance(cause, LedgerError) else str(cause)
        super().__init__(f"funding failed: {reason}")


class NothingToClaimError(ClaimFleetError):
    def __init__(self, message: str = "nothing to claim/send"):
        super().__init__(message)


class ControlError(ClaimFleetError):
    """A control-surface precondition did not hold."""

    status_code = 400


class BotNotRunningError(ControlError):
    status_code = 409


class WalletNotFoundError(ControlError):
    status_code = 404


class NoSponsorAvailableError(ControlError):
    status_code = 409


__all__ = [
    "BotNotRunningError",
    "ClaimFleetError",
    "ControlError",
    "FundingError",
    "LedgerError",
    "LedgerErrorCode",
    "NoSponsorAvailableError",
    "NothingToClaimError",
    "WalletNotFoundError",
    "code_for_result",
]
