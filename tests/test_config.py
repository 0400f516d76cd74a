"""Tests for configuration, tiers and amount helpers."""

from datetime import timedelta
from decimal import Decimal

import pytest

from relaypay.config import BuilderCredentials, ChainConfig
from relaypay.errors import InvalidInputError, UnknownTierError
from relaypay.money import format_usd, from_base_units, to_base_units, to_decimal
from relaypay.tiers import TIERS, get_tier


class TestChainConfig:
    def test_defaults_are_normalized(self):
        config = ChainConfig()
        assert config.usdc == "0x2791bca1f2de4661ed88a30c99a7a9449aa84174"
        assert config.chain_id == 137
        assert config.renewal_period == timedelta(days=30)
        assert config.amount_tolerance == Decimal("0.1")

    def test_checksummed_input_is_lowercased(self):
        config = ChainConfig(treasury="0x3233F590F3CB6A70123BD02B49105BE5D5C10DF3")
        assert config.treasury == "0x3233f590f3cb6a70123bd02b49105be5d5c10df3"

    def test_from_env(self):
        env = {
            "RELAYPAY_CHAIN_ID": "80002",
            "RELAYPAY_RENEWAL_DAYS": "7",
            "RELAYPAY_AMOUNT_TOLERANCE": "0.05",
            "RELAYPAY_SPENDERS": "0x" + "11" * 20 + ", 0x" + "22" * 20,
            "RELAYPAY_POLL_INTERVAL_SECONDS": "0.5",
            "RELAYPAY_RPC_URL": "",
        }
        config = ChainConfig.from_env(env)
        assert config.chain_id == 80002
        assert config.renewal_days == 7
        assert config.amount_tolerance == Decimal("0.05")
        assert config.spenders == ("0x" + "11" * 20, "0x" + "22" * 20)
        assert config.poll_interval_seconds == 0.5
        assert config.rpc_url == "https://polygon-rpc.com"

    def test_explicit_overrides_win(self):
        config = ChainConfig.from_env({"RELAYPAY_CHAIN_ID": "80002"}, chain_id=137)
        assert config.chain_id == 137

    def test_invalid_env_value(self):
        with pytest.raises(InvalidInputError, match="RELAYPAY_CHAIN_ID"):
            ChainConfig.from_env({"RELAYPAY_CHAIN_ID": "polygon"})

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"treasury": "0x1234"},
            {"spenders": ()},
            {"chain_id": 0},
            {"safe_init_code_hash": "0xabc"},
            {"amount_tolerance": Decimal("-1")},
            {"renewal_days": 0},
        ],
    )
    def test_invalid_values(self, kwargs):
        with pytest.raises(InvalidInputError):
            ChainConfig(**kwargs)

    def test_with_overrides(self):
        config = ChainConfig().with_overrides(renewal_days=60)
        assert config.renewal_period == timedelta(days=60)


class TestBuilderCredentials:
    def test_from_env(self):
        env = {
            "POLYMARKET_BUILDER_API_KEY": "bk",
            "POLYMARKET_BUILDER_SECRET": "bs",
            "POLYMARKET_BUILDER_PASSPHRASE": "bp",
        }
        builder = BuilderCredentials.from_env(env)
        assert builder == BuilderCredentials(key="bk", secret="bs", passphrase="bp")

    def test_missing_secret(self):
        assert BuilderCredentials.from_env({"POLYMARKET_BUILDER_API_KEY": "bk"}) is None

    def test_repr_masks_secret(self):
        text = repr(BuilderCredentials(key="bk", secret="top-secret", passphrase="bp"))
        assert "top-secret" not in text
        assert "bk" in text


class TestTiers:
    def test_catalogue(self):
        assert {name: (t.price, t.quota) for name, t in TIERS.items()} == {
            "basic": (Decimal("5"), 50),
            "pro": (Decimal("15"), 200),
            "whale": (Decimal("50"), 1000),
        }

    def test_lookup_is_case_insensitive(self):
        assert get_tier(" Pro ").name == "pro"

    def test_unknown(self):
        with pytest.raises(UnknownTierError):
            get_tier("platinum")


class TestMoney:
    def test_to_base_units(self):
        assert to_base_units("4.91", 6) == 4_910_000
        assert to_base_units(5, 6) == 5_000_000

    def test_float_input_has_no_drift(self):
        assert to_decimal(4.91) == Decimal("4.91")

    @pytest.mark.parametrize("bad", ["0", "-1", "0.0000001", "abc", "NaN", True])
    def test_to_base_units_rejects(self, bad):
        with pytest.raises(InvalidInputError):
            to_base_units(bad, 6)

    def test_from_base_units(self):
        assert from_base_units(4_890_000, 6) == Decimal("4.89")

    def test_format_usd(self):
        assert format_usd(Decimal("15")) == "$15.00"
