"""Runtime configuration.

Built once at process start (Settings.from_env) and passed explicitly to
create_app and the managers. Nothing here is read at import time.
"""

import os
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation

from protocol import MIN_JUROR_STAKE, TieBreak

ENV_PREFIX = "MARKET_"

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off"}
_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(ENV_PREFIX + name)
    if raw is None or raw == "":
        return default
    value = raw.strip().lower()
    if value in _TRUE:
        return True
    if value in _FALSE:
        return False
    raise ValueError(f"{ENV_PREFIX}{name} must be a boolean, got {raw!r}")


@dataclass
class Settings:
    db_path: str = ":memory:"
    host: str = "127.0.0.1"
    port: int = 8000
    log_level: str = "INFO"
    min_juror_stake: Decimal = MIN_JUROR_STAKE
    tie_break: TieBreak = TieBreak.SELLER
    auto_award_badges: bool = True
    require_registered_jurors: bool = False

    def __post_init__(self):
        if not 0 < self.port < 65536:
            raise ValueError(f"port out of range: {self.port}")
        self.log_level = self.log_level.upper()
        if self.log_level not in _LOG_LEVELS:
            raise ValueError(f"unknown log level: {self.log_level}")
        try:
            self.min_juror_stake = Decimal(str(self.min_juror_stake))
        except InvalidOperation:
            raise ValueError(f"min_juror_stake must be a number: {self.min_juror_stake!r}")
        if not self.min_juror_stake.is_finite():
            raise ValueError("min_juror_stake must be finite")
        if self.min_juror_stake < 0:
            raise ValueError("min_juror_stake must be non-negative")
        self.tie_break = TieBreak(self.tie_break)

    @classmethod
    def from_env(cls) -> "Settings":
        """Read MARKET_* environment variables. Invalid values raise ValueError."""
        env = os.environ
        try:
            port = int(env.get(ENV_PREFIX + "PORT", "8000"))
        except ValueError:
            raise ValueError(f"{ENV_PREFIX}PORT must be an integer")
        try:
            min_stake = Decimal(env.get(ENV_PREFIX + "MIN_JUROR_STAKE", str(MIN_JUROR_STAKE)))
        except InvalidOperation:
            raise ValueError(f"{ENV_PREFIX}MIN_JUROR_STAKE must be a number")
        return cls(
            db_path=env.get(ENV_PREFIX + "DB", ":memory:"),
            host=env.get(ENV_PREFIX + "HOST", "127.0.0.1"),
            port=port,
            log_level=env.get(ENV_PREFIX + "LOG_LEVEL", "INFO"),
            min_juror_stake=min_stake,
            tie_break=env.get(ENV_PREFIX + "TIE_BREAK", TieBreak.SELLER.value).strip().lower(),
            auto_award_badges=_env_bool("AUTO_BADGES", True),
            require_registered_jurors=_env_bool("REQUIRE_REGISTERED_JURORS", False),
        )
