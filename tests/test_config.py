"""Tests for server/config.py -- Settings and MARKET_* environment parsing."""

from decimal import Decimal

import pytest

from protocol import TieBreak
from server.config import Settings


ENV_VARS = [
    "MARKET_DB", "MARKET_HOST", "MARKET_PORT", "MARKET_LOG_LEVEL", "MARKET_MIN_JUROR_STAKE",
    "MARKET_TIE_BREAK", "MARKET_AUTO_BADGES", "MARKET_REQUIRE_REGISTERED_JURORS",
]


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)


def test_defaults():
    s = Settings.from_env()
    assert s.db_path == ":memory:"
    assert s.port == 8000
    assert s.log_level == "INFO"
    assert s.min_juror_stake == Decimal("1000")
    assert s.tie_break == TieBreak.SELLER
    assert s.auto_award_badges is True
    assert s.require_registered_jurors is False


def test_from_env(monkeypatch):
    monkeypatch.setenv("MARKET_DB", "/tmp/market.db")
    monkeypatch.setenv("MARKET_PORT", "9001")
    monkeypatch.setenv("MARKET_LOG_LEVEL", "debug")
    monkeypatch.setenv("MARKET_MIN_JUROR_STAKE", "250.5")
    monkeypatch.setenv("MARKET_TIE_BREAK", "Buyer")
    monkeypatch.setenv("MARKET_AUTO_BADGES", "off")
    monkeypatch.setenv("MARKET_REQUIRE_REGISTERED_JURORS", "yes")
    s = Settings.from_env()
    assert s.db_path == "/tmp/market.db"
    assert s.port == 9001
    assert s.log_level == "DEBUG"
    assert s.min_juror_stake == Decimal("250.5")
    assert s.tie_break == TieBreak.BUYER
    assert s.auto_award_badges is False
    assert s.require_registered_jurors is True


@pytest.mark.parametrize("name,value", [
    ("MARKET_PORT", "eighty"),
    ("MARKET_PORT", "70000"),
    ("MARKET_LOG_LEVEL", "LOUD"),
    ("MARKET_MIN_JUROR_STAKE", "lots"),
    ("MARKET_MIN_JUROR_STAKE", "-1"),
    ("MARKET_MIN_JUROR_STAKE", "NaN"),
    ("MARKET_MIN_JUROR_STAKE", "sNaN"),
    ("MARKET_MIN_JUROR_STAKE", "Infinity"),
    ("MARKET_TIE_BREAK", "coin-flip"),
    ("MARKET_AUTO_BADGES", "maybe"),
])
def test_invalid_values(monkeypatch, name, value):
    monkeypatch.setenv(name, value)
    with pytest.raises(ValueError):
        Settings.from_env()


@pytest.mark.parametrize("stake", ["NaN", "-Infinity", "lots"])
def test_direct_construction_rejects_bad_stake(stake):
    with pytest.raises(ValueError):
        Settings(min_juror_stake=stake)
