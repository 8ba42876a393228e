"""Tests for run configuration validation and persistence."""

import pytest
from pydantic import ValidationError
from xrpl.core.keypairs import generate_seed
from xrpl.wallet import Wallet

from claimfleet.config import RunConfig, cfg, load_run_config, redact, save_run_config


def _config(**overrides) -> RunConfig:
    data = {
        "recipient": Wallet.create().address,
        "funder_secret": generate_seed(),
        "sponsor_secrets": [generate_seed()],
    }
    data.update(overrides)
    return RunConfig(**data)


class TestServiceConfig:
    def test_sections_present(self) -> None:
        for section in ("ledger", "timeout", "bot", "store", "alerts", "server"):
            assert section in cfg
        assert cfg["ledger"]["rpc_urls"]


class TestRunConfig:
    def test_defaults(self) -> None:
        c = _config()
        assert c.concurrency == 5
        assert c.task_funding_drops == 100_000
        assert c.sponsor_starting_drops is None
        assert c.memo is None

    def test_bad_recipient(self) -> None:
        with pytest.raises(ValidationError):
            _config(recipient="not-an-address")

    def test_bad_funder(self) -> None:
        with pytest.raises(ValidationError):
            _config(funder_secret="sBadSeed")

    def test_no_sponsors(self) -> None:
        with pytest.raises(ValidationError):
            _config(sponsor_secrets=[])
        with pytest.raises(ValidationError):
            _config(sponsor_secrets=["   "])

    def test_duplicate_sponsors(self) -> None:
        seed = generate_seed()
        with pytest.raises(ValidationError):
            _config(sponsor_secrets=[seed, f" {seed}"])

    def test_non_positive_concurrency(self) -> None:
        with pytest.raises(ValidationError):
            _config(concurrency=0)

    def test_secrets_are_stripped(self) -> None:
        seed = generate_seed()
        assert _config(funder_secret=f"  {seed} ").funder_secret == seed

    def test_frozen(self) -> None:
        c = _config()
        with pytest.raises(ValidationError):
            c.concurrency = 9

    def test_redacted_hides_secrets(self) -> None:
        c = _config()
        shown = c.redacted()
        assert shown["funder_secret"] == redact(c.funder_secret)
        assert c.funder_secret not in str(shown)
        assert all(c_s not in str(shown) for c_s in c.sponsor_secrets)
        assert shown["recipient"] == c.recipient


class TestPersistence:
    def test_round_trip(self, tmp_path) -> None:
        path = tmp_path / "run_config.json"
        c = _config(memo="hello", concurrency=3)
        save_run_config(c, path)
        assert load_run_config(path) == c

    def test_missing_file(self, tmp_path) -> None:
        assert load_run_config(tmp_path / "nope.json") is None

    def test_corrupt_file(self, tmp_path) -> None:
        path = tmp_path / "run_config.json"
        path.write_text("{not json")
        assert load_run_config(path) is None
