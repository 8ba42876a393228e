import json
import logging
import os
import tomllib
from pathlib import Path

from pydantic import BaseModel, Field, PositiveInt, field_validator
from xrpl.core.addresscodec import is_valid_classic_address

import claimfleet.constants as C
from claimfleet.keys import normalize_secret, validate_secret

log = logging.getLogger("claimfleet.config")

pkg_root = Path(__file__).parent
config_file = pkg_root / "config.toml"

cfg = tomllib.loads(Path(config_file).read_text())

# Environment wins over the packaged defaults
if rpc_urls := os.getenv("RPC_URLS"):
    cfg["ledger"]["rpc_urls"] = [u.strip() for u in rpc_urls.split(",") if u.strip()]
cfg["store"]["db_path"] = os.getenv("WALLET_DB", cfg["store"]["db_path"])
cfg["store"]["run_config"] = os.getenv("RUN_CONFIG", cfg["store"]["run_config"])
cfg["alerts"]["webhook_url"] = os.getenv("ALERT_WEBHOOK_URL", cfg["alerts"]["webhook_url"])
cfg["server"]["port"] = int(os.getenv("PORT", cfg["server"]["port"]))


class RunConfig(BaseModel):
    """What one bot run works with. Replaced wholesale, never edited in place."""

    recipient: str
    funder_secret: str
    sponsor_secrets: list[str] = Field(min_length=1)
    concurrency: PositiveInt = C.DEFAULT_CONCURRENCY
    task_funding_drops: PositiveInt = C.DEFAULT_TASK_FUNDING_DROPS
    sponsor_starting_drops: PositiveInt | None = None
    memo: str | None = None

    model_config = {"frozen": True}

    @field_validator("recipient")
    @classmethod
    def _recipient_is_address(cls, v: str) -> str:
        v = v.strip()
        if not is_valid_classic_address(v):
            raise ValueError(f"not a classic address: {v!r}")
        return v

    @field_validator("funder_secret")
    @classmethod
    def _funder_is_seed(cls, v: str) -> str:
        if not validate_secret(v):
            raise ValueError("funder secret is not a valid seed")
        return normalize_secret(v)

    @field_validator("sponsor_secrets")
    @classmethod
    def _sponsors_are_seeds(cls, v: list[str]) -> list[str]:
        secrets = [normalize_secret(s) for s in v if s.strip()]
        if not secrets:
            raise ValueError("at least one sponsor secret is required")
        bad = [i for i, s in enumerate(secrets) if not validate_secret(s)]
        if bad:
            raise ValueError(f"invalid sponsor secret(s) at position {bad}")
        if len(set(secrets)) != len(secrets):
            raise ValueError("sponsor secrets must be distinct")
        return secrets

    def redacted(self) -> dict:
        """Config as shown to operators: secrets reduced to a prefix."""
        data = self.model_dump()
        data["funder_secret"] = redact(self.funder_secret)
        data["sponsor_secrets"] = [redact(s) for s in self.sponsor_secrets]
        return data


def redact(secret: str) -> str:
    return f"{secret[:4]}…" if secret else ""


def load_run_config(path: str | Path | None = None) -> RunConfig | None:
    """Load the persisted run config, or None when there isn't a usable one."""
    path = Path(path or cfg["store"]["run_config"])
    if not path.is_file():
        log.debug("No run config at %s", path)
        return None
    try:
        return RunConfig.model_validate(json.loads(path.read_text()))
    except (ValueError, OSError) as e:
        log.error("Failed to load run config %s: %s", path, e)
        return None


def save_run_config(config: RunConfig, path: str | Path | None = None) -> None:
    path = Path(path or cfg["store"]["run_config"])
    path.write_text(config.model_dump_json(indent=2))
    log.info("Run config saved to %s", path)
