"""Juror registry: staked arbitrators and their own track record."""

import logging
import time
from dataclasses import dataclass, field
from decimal import Decimal

from protocol import DEFAULT_JUROR_REPUTATION, DEFAULT_LEADERBOARD_LIMIT, DEFAULT_PAGE_LIMIT
from server.config import Settings
from server.errors import (
    ConflictError, InvalidStateError, NotFoundError, ValidationError,
    money_context, normalize_address, parse_amount, check_page, sum_amounts,
)
from server.store import Database

logger = logging.getLogger(__name__)


@dataclass
class Juror:
    address: str
    stake: Decimal
    reputation: int = DEFAULT_JUROR_REPUTATION
    is_active: bool = True
    disputes_participated: int = 0
    disputes_resolved: int = 0
    total_rewards: Decimal = Decimal("0")
    total_penalties: Decimal = Decimal("0")
    accuracy: float = 0.0
    last_active: float = field(default_factory=time.time)
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)

    def touch(self):
        self.last_active = self.updated_at = time.time()

    def adjust_reputation(self, change: int):
        self.reputation = max(0, self.reputation + change)
        self.touch()

    def record_participation(self):
        self.disputes_participated += 1
        self._recompute_accuracy()
        self.touch()

    def record_resolution(self):
        self.disputes_resolved += 1
        self._recompute_accuracy()
        self.touch()

    def add_reward(self, amount: Decimal):
        with money_context():
            self.total_rewards += amount
        self.touch()

    def add_penalty(self, amount: Decimal):
        with money_context():
            self.total_penalties += amount
        self.touch()

    def _recompute_accuracy(self):
        if self.disputes_participated == 0:
            self.accuracy = 0.0
        else:
            self.accuracy = self.disputes_resolved / self.disputes_participated * 100

    def to_dict(self) -> dict:
        return {
            "address": self.address,
            "stake": str(self.stake),
            "reputation": self.reputation,
            "is_active": self.is_active,
            "disputes_participated": self.disputes_participated,
            "disputes_resolved": self.disputes_resolved,
            "total_rewards": str(self.total_rewards),
            "total_penalties": str(self.total_penalties),
            "accuracy": self.accuracy,
            "last_active": self.last_active,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


class JurorRegistry:
    """SQLite-backed registry of staked jurors."""

    def __init__(self, db: Database, settings: Settings | None = None):
        self.db = db
        self.settings = settings or Settings()

    @staticmethod
    def _row_to_juror(row) -> Juror:
        return Juror(
            address=row["address"],
            stake=Decimal(row["stake"]),
            reputation=row["reputation"],
            is_active=bool(row["is_active"]),
            disputes_participated=row["disputes_participated"],
            disputes_resolved=row["disputes_resolved"],
            total_rewards=Decimal(row["total_rewards"]),
            total_penalties=Decimal(row["total_penalties"]),
            accuracy=row["accuracy"],
            last_active=row["last_active"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def _save(self, conn, juror: Juror):
        conn.execute(
            """
            UPDATE jurors SET stake = ?, reputation = ?, is_active = ?,
                disputes_participated = ?, disputes_resolved = ?,
                total_rewards = ?, total_penalties = ?, accuracy = ?,
                last_active = ?, updated_at = ?
            WHERE address = ?
            """,
            (str(juror.stake), juror.reputation, int(juror.is_active),
             juror.disputes_participated, juror.disputes_resolved,
             str(juror.total_rewards), str(juror.total_penalties), juror.accuracy,
             juror.last_active, juror.updated_at, juror.address),
        )

    def _check_stake(self, stake) -> Decimal:
        stake = parse_amount(stake, "stake", allow_zero=True)
        if stake < self.settings.min_juror_stake:
            raise ValidationError(
                f"Minimum stake of {self.settings.min_juror_stake} tokens required",
                "VALIDATION_INSUFFICIENT_STAKE",
            )
        return stake

    def _mutate(self, address: str, fn) -> Juror:
        address = normalize_address(address)
        with self.db.transaction() as conn:
            row = conn.execute("SELECT * FROM jurors WHERE address = ?", (address,)).fetchone()
            if row is None:
                raise NotFoundError("Juror not found", "NOT_FOUND_JUROR")
            juror = self._row_to_juror(row)
            fn(juror)
            self._save(conn, juror)
        return juror

    # --- registration ---

    def register(self, address: str, stake) -> Juror:
        address = normalize_address(address)
        stake = self._check_stake(stake)
        juror = Juror(address=address, stake=stake)
        with self.db.transaction() as conn:
            if conn.execute("SELECT 1 FROM jurors WHERE address = ?", (address,)).fetchone():
                raise ConflictError("Juror already registered", "CONFLICT_JUROR_EXISTS")
            conn.execute(
                """
                INSERT INTO jurors (address, stake, reputation, is_active, last_active, created_at, updated_at)
                VALUES (?, ?, ?, 1, ?, ?, ?)
                """,
                (address, str(stake), juror.reputation, juror.last_active, juror.created_at, juror.updated_at),
            )
        logger.info("Registered juror %s with stake %s", address, stake)
        return juror

    def unregister(self, address: str) -> Juror:
        def deactivate(juror: Juror):
            if not juror.is_active:
                raise InvalidStateError("Juror already inactive", "INVALID_STATE_JUROR_INACTIVE")
            juror.is_active = False
            juror.updated_at = time.time()

        juror = self._mutate(address, deactivate)
        logger.info("Unregistered juror %s", juror.address)
        return juror

    def update_stake(self, address: str, new_stake) -> Juror:
        stake = self._check_stake(new_stake)

        def restake(juror: Juror):
            juror.stake = stake
            juror.touch()

        juror = self._mutate(address, restake)
        logger.info("Juror %s stake updated to %s", juror.address, stake)
        return juror

    # --- counters ---

    def adjust_reputation(self, address: str, change: int) -> Juror:
        return self._mutate(address, lambda j: j.adjust_reputation(change))

    def record_participation(self, address: str) -> Juror:
        return self._mutate(address, lambda j: j.record_participation())

    def record_resolution(self, address: str) -> Juror:
        return self._mutate(address, lambda j: j.record_resolution())

    def add_reward(self, address: str, amount) -> Juror:
        amount = parse_amount(amount)
        return self._mutate(address, lambda j: j.add_reward(amount))

    def add_penalty(self, address: str, amount) -> Juror:
        amount = parse_amount(amount)
        return self._mutate(address, lambda j: j.add_penalty(amount))

    def record_case(self, address: str, agreed_with_outcome: bool) -> Juror | None:
        """Count one resolved case for a registered juror. Unregistered -> None."""
        address = normalize_address(address)

        def record(juror: Juror):
            juror.record_participation()
            if agreed_with_outcome:
                juror.record_resolution()

        if self.get(address) is None:
            return None
        return self._mutate(address, record)

    # --- queries ---

    def get(self, address: str) -> Juror | None:
        address = normalize_address(address)
        row = self.db.fetch_one("SELECT * FROM jurors WHERE address = ?", (address,))
        return self._row_to_juror(row) if row else None

    def require(self, address: str) -> Juror:
        juror = self.get(address)
        if juror is None:
            raise NotFoundError("Juror not found", "NOT_FOUND_JUROR")
        return juror

    def is_eligible(self, address: str) -> bool:
        juror = self.get(address)
        return juror is not None and juror.is_active

    def active(self, limit: int = DEFAULT_PAGE_LIMIT, offset: int = 0) -> tuple[list[Juror], int]:
        limit, offset = check_page(limit, offset)
        rows = self.db.fetch_all(
            "SELECT * FROM jurors WHERE is_active = 1 ORDER BY reputation DESC, address ASC LIMIT ? OFFSET ?",
            (limit, offset),
        )
        return [self._row_to_juror(r) for r in rows], self.db.count("jurors", "is_active = 1")

    def top(self, limit: int = DEFAULT_LEADERBOARD_LIMIT, offset: int = 0) -> list[Juror]:
        limit, offset = check_page(limit, offset)
        rows = self.db.fetch_all(
            """
            SELECT * FROM jurors WHERE is_active = 1
            ORDER BY reputation DESC, accuracy DESC, address ASC
            LIMIT ? OFFSET ?
            """,
            (limit, offset),
        )
        return [self._row_to_juror(r) for r in rows]

    def stats(self) -> dict:
        jurors = [self._row_to_juror(r) for r in self.db.fetch_all("SELECT * FROM jurors")]
        active = [j for j in jurors if j.is_active]
        return {
            "active": len(active),
            "inactive": len(jurors) - len(active),
            "total": len(jurors),
            "total_stake": str(sum_amounts(j.stake for j in active)),
            "avg_reputation": round(sum(j.reputation for j in active) / len(active)) if active else 0,
            "avg_accuracy": round(sum(j.accuracy for j in active) / len(active)) if active else 0,
        }
