"""Reputation ledger for the escrow marketplace.

Per-user score, tier, counters, badges and a bounded history log.
`Reputation` holds the pure scoring rules; `ReputationManager` loads,
mutates and commits records inside one transaction each.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Callable

from protocol import (
    TX_SUCCESS_POINTS, TX_FAILURE_POINTS, ARBITRATION_WIN_POINTS, ARBITRATION_LOSS_POINTS,
    MAX_HISTORY_ENTRIES, TIER_BANDS, TIERS, SCORE_BUCKETS, BADGE_CATEGORIES,
    DEFAULT_LEADERBOARD_LIMIT, DEFAULT_PAGE_LIMIT, DEFAULT_ACTIVITY_LIMIT, HistoryAction,
)
from server.errors import NotFoundError, ValidationError, normalize_address, require_text, check_page
from server.store import Database, dumps, loads

logger = logging.getLogger(__name__)


def tier_for(score: int) -> str:
    """Named tier band for a score. Monotonic in score."""
    for minimum, name in TIER_BANDS:
        if score >= minimum:
            return name
    return TIER_BANDS[-1][1]


@dataclass
class Reputation:
    """Reputation record for one user."""
    user: str
    score: int = 0
    tx_total: int = 0
    tx_successful: int = 0
    tx_failed: int = 0
    arb_participated: int = 0
    arb_won: int = 0
    arb_lost: int = 0
    badges: list[dict] = field(default_factory=list)
    history: list[dict] = field(default_factory=list)
    created_at: float = field(default_factory=time.time)
    last_updated: float = field(default_factory=time.time)

    @property
    def tier(self) -> str:
        return tier_for(self.score)

    def success_rate(self) -> float:
        if self.tx_total == 0:
            return 0.0
        return self.tx_successful / self.tx_total * 100

    def arbitration_success_rate(self) -> float:
        if self.arb_participated == 0:
            return 0.0
        return self.arb_won / self.arb_participated * 100

    def add_history(self, action: str, change: int, reason: str = "", related_id=None) -> dict:
        """Append a history entry, keeping only the most recent entries."""
        entry = {
            "action": action,
            "change": change,
            "reason": reason,
            "related_id": str(related_id) if related_id is not None else None,
            "timestamp": time.time(),
        }
        self.history.append(entry)
        if len(self.history) > MAX_HISTORY_ENTRIES:
            self.history = self.history[-MAX_HISTORY_ENTRIES:]
        return entry

    def _apply(self, change: int):
        # Floor at every step, not on the final sum
        self.score = max(0, self.score + change)
        self.last_updated = time.time()

    def record_transaction(self, success: bool, related_id=None) -> int:
        self.tx_total += 1
        if success:
            self.tx_successful += 1
            change = TX_SUCCESS_POINTS
            self.add_history(HistoryAction.TX_SUCCESS.value, change, "Transaction completed successfully", related_id)
        else:
            self.tx_failed += 1
            change = TX_FAILURE_POINTS
            self.add_history(HistoryAction.TX_FAILED.value, change, "Transaction failed", related_id)
        self._apply(change)
        return change

    def record_arbitration(self, won: bool, related_id=None) -> int:
        self.arb_participated += 1
        if won:
            self.arb_won += 1
            change = ARBITRATION_WIN_POINTS
            self.add_history(HistoryAction.ARBITRATION_WON.value, change, "Successfully arbitrated dispute", related_id)
        else:
            self.arb_lost += 1
            change = ARBITRATION_LOSS_POINTS
            self.add_history(HistoryAction.ARBITRATION_LOST.value, change, "Lost arbitration case", related_id)
        self._apply(change)
        return change

    def adjust(self, action: str, change: int, reason: str = "", related_id=None) -> int:
        """Raw score adjustment (manual update)."""
        self.add_history(action, change, reason, related_id)
        self._apply(change)
        return change

    def has_badge(self, name: str) -> bool:
        return any(b["name"] == name for b in self.badges)

    def award_badge(self, name: str, description: str = "", category: str = "Transaction") -> bool:
        """Add a badge. Returns False (and changes nothing) if already held."""
        if category not in BADGE_CATEGORIES:
            raise ValidationError(f"Invalid badge category: {category}", "VALIDATION_INVALID_VALUE")
        if self.has_badge(name):
            return False
        self.badges.append({
            "name": name,
            "description": description,
            "category": category,
            "earned_at": time.time(),
        })
        self.last_updated = time.time()
        return True

    def to_dict(self) -> dict:
        return {
            "user": self.user,
            "score": self.score,
            "tier": self.tier,
            "transactions": {
                "total": self.tx_total,
                "successful": self.tx_successful,
                "failed": self.tx_failed,
            },
            "arbitrations": {
                "participated": self.arb_participated,
                "won": self.arb_won,
                "lost": self.arb_lost,
            },
            "badges": list(self.badges),
            "success_rate": self.success_rate(),
            "arbitration_success_rate": self.arbitration_success_rate(),
            "created_at": self.created_at,
            "last_updated": self.last_updated,
        }

    @classmethod
    def from_dict(cls, d: dict) -> "Reputation":
        tx = d.get("transactions", {})
        arb = d.get("arbitrations", {})
        return cls(
            user=d["user"],
            score=d.get("score", 0),
            tx_total=tx.get("total", 0),
            tx_successful=tx.get("successful", 0),
            tx_failed=tx.get("failed", 0),
            arb_participated=arb.get("participated", 0),
            arb_won=arb.get("won", 0),
            arb_lost=arb.get("lost", 0),
            badges=list(d.get("badges", [])),
            history=list(d.get("history", [])),
            created_at=d.get("created_at", time.time()),
            last_updated=d.get("last_updated", time.time()),
        )


# --- Badge rules ---

@dataclass(frozen=True)
class BadgeRule:
    name: str
    description: str
    category: str
    qualifies: Callable[[Reputation], bool]


# Evaluated in this order by auto_award_badges
BADGE_RULES = (
    BadgeRule("First Transaction", "Completed first transaction", "Transaction",
              lambda r: r.tx_total >= 1),
    BadgeRule("Trusted Trader", "Completed 10+ successful transactions with 90%+ success rate", "Transaction",
              lambda r: r.tx_successful >= 10 and r.success_rate() >= 90),
    BadgeRule("Arbitration Expert", "Participated in 5+ arbitrations with 80%+ success rate", "Arbitration",
              lambda r: r.arb_participated >= 5 and r.arbitration_success_rate() >= 80),
    BadgeRule("Community Leader", "Achieved 1000+ reputation score", "Community",
              lambda r: r.score >= 1000),
    BadgeRule("Legend", "Achieved 2000+ reputation score", "Special",
              lambda r: r.score >= 2000),
)
BADGE_RULES_BY_NAME = {rule.name: rule for rule in BADGE_RULES}


def qualifying_badges(rep: Reputation) -> list[BadgeRule]:
    """Rules the user newly qualifies for (not already held)."""
    return [rule for rule in BADGE_RULES if not rep.has_badge(rule.name) and rule.qualifies(rep)]


class ReputationManager:
    """SQLite-backed reputation ledger."""

    def __init__(self, db: Database):
        self.db = db

    # --- persistence ---

    @staticmethod
    def _row_to_reputation(row) -> Reputation:
        return Reputation.from_dict({
            "user": row["user"],
            "score": row["score"],
            "transactions": loads(row["transactions"], {}),
            "arbitrations": loads(row["arbitrations"], {}),
            "badges": loads(row["badges"], []),
            "history": loads(row["history"], []),
            "created_at": row["created_at"],
            "last_updated": row["last_updated"],
        })

    def _load(self, conn, user: str) -> Reputation | None:
        row = conn.execute("SELECT * FROM reputations WHERE user = ?", (user,)).fetchone()
        return self._row_to_reputation(row) if row else None

    def _save(self, conn, rep: Reputation):
        d = rep.to_dict()
        conn.execute(
            """
            INSERT INTO reputations (user, score, tier, transactions, arbitrations, badges, history, created_at, last_updated)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(user) DO UPDATE SET
                score = excluded.score, tier = excluded.tier,
                transactions = excluded.transactions, arbitrations = excluded.arbitrations,
                badges = excluded.badges, history = excluded.history,
                last_updated = excluded.last_updated
            """,
            (rep.user, rep.score, rep.tier, dumps(d["transactions"]), dumps(d["arbitrations"]),
             dumps(rep.badges), dumps(rep.history), rep.created_at, rep.last_updated),
        )

    def _mutate(self, user: str, fn) -> tuple[Reputation, object]:
        """Load (or lazily create) a record, apply fn, commit. Returns (rep, fn result)."""
        user = normalize_address(user, "user")
        with self.db.transaction() as conn:
            rep = self._load(conn, user) or Reputation(user=user)
            result = fn(rep)
            self._save(conn, rep)
        return rep, result

    # --- mutations ---

    def record_transaction(self, user: str, success: bool, related_id=None) -> Reputation:
        rep, change = self._mutate(user, lambda r: r.record_transaction(success, related_id))
        logger.info("Transaction reputation for %s: %+d (score %d, %s)", rep.user, change, rep.score, rep.tier)
        return rep

    def record_arbitration(self, user: str, won: bool, related_id=None) -> Reputation:
        rep, change = self._mutate(user, lambda r: r.record_arbitration(won, related_id))
        logger.info("Arbitration reputation for %s: %+d (score %d, %s)", rep.user, change, rep.score, rep.tier)
        return rep

    def award_badge(self, user: str, name: str, description: str = "",
                    category: str = "Special") -> tuple[Reputation, bool]:
        """Award a named badge. Idempotent: returns (rep, False) if already held."""
        name = require_text(name, "name")
        rep, awarded = self._mutate(user, lambda r: r.award_badge(name, description or "", category))
        if awarded:
            logger.info("Awarded badge %r to %s", name, rep.user)
        return rep, awarded

    def check_badge_qualification(self, user: str, name: str) -> bool:
        rule = BADGE_RULES_BY_NAME.get(name)
        rep = self.get(user)
        if rule is None or rep is None or rep.has_badge(name):
            return False
        return rule.qualifies(rep)

    def auto_award_badges(self, user: str) -> list[dict]:
        """Award every badge the user newly qualifies for. Returns the new badges."""
        def award(rep: Reputation) -> list[dict]:
            awarded = []
            for rule in qualifying_badges(rep):
                rep.award_badge(rule.name, rule.description, rule.category)
                awarded.append({"name": rule.name, "description": rule.description, "category": rule.category})
            return awarded

        user = normalize_address(user, "user")
        if self.get(user) is None:
            return []
        rep, awarded = self._mutate(user, award)
        for badge in awarded:
            logger.info("Auto-awarded badge %r to %s", badge["name"], rep.user)
        return awarded

    def apply_update(self, user: str, action: str, change: int, reason: str | None = None,
                     related_id=None) -> Reputation:
        """Manual update: route known actions to their ledger operation, else adjust the score."""
        action = require_text(action, "action")
        if isinstance(change, bool) or not isinstance(change, int):
            raise ValidationError("change must be an integer", "VALIDATION_INVALID_VALUE")
        if action == "transaction":
            return self.record_transaction(user, change > 0, related_id)
        if action == "arbitration":
            return self.record_arbitration(user, change > 0, related_id)
        if action == "badge":
            rep, _ = self.award_badge(user, require_text(reason, "reason"), "Badge earned", "Special")
            return rep
        rep, applied = self._mutate(user, lambda r: r.adjust(action, change, reason or "", related_id))
        logger.info("Manual reputation update for %s: %s %+d", rep.user, action, applied)
        return rep

    # --- queries ---

    def get(self, user: str) -> Reputation | None:
        user = normalize_address(user, "user")
        row = self.db.fetch_one("SELECT * FROM reputations WHERE user = ?", (user,))
        return self._row_to_reputation(row) if row else None

    def require(self, user: str) -> Reputation:
        rep = self.get(user)
        if rep is None:
            raise NotFoundError("Reputation not found", "NOT_FOUND_REPUTATION")
        return rep

    def leaderboard(self, limit: int = DEFAULT_LEADERBOARD_LIMIT, offset: int = 0) -> list[dict]:
        limit, offset = check_page(limit, offset)
        rows = self.db.fetch_all(
            "SELECT * FROM reputations ORDER BY score DESC, user ASC LIMIT ? OFFSET ?",
            (limit, offset),
        )
        board = []
        for rank, row in enumerate(rows, start=offset + 1):
            d = self._row_to_reputation(row).to_dict()
            board.append({"rank": rank, **d})
        return board

    def history(self, user: str, limit: int = DEFAULT_PAGE_LIMIT, offset: int = 0) -> tuple[list[dict], int]:
        """Newest-first page of a user's history, plus the total entry count."""
        limit, offset = check_page(limit, offset)
        rep = self.require(user)
        newest_first = list(reversed(rep.history))
        return newest_first[offset:offset + limit], len(rep.history)

    def badges(self, user: str) -> list[dict]:
        return self.require(user).badges

    def by_tier(self, tier: str, limit: int = DEFAULT_PAGE_LIMIT, offset: int = 0) -> tuple[list[Reputation], int]:
        if tier not in TIERS:
            raise ValidationError(f"Unknown tier: {tier}", "VALIDATION_INVALID_VALUE")
        limit, offset = check_page(limit, offset)
        rows = self.db.fetch_all(
            "SELECT * FROM reputations WHERE tier = ? ORDER BY score DESC, user ASC LIMIT ? OFFSET ?",
            (tier, limit, offset),
        )
        total = self.db.count("reputations", "tier = ?", (tier,))
        return [self._row_to_reputation(r) for r in rows], total

    def recent_activity(self, limit: int = DEFAULT_ACTIVITY_LIMIT, offset: int = 0) -> list[dict]:
        """History entries across all users, newest first."""
        limit, offset = check_page(limit, offset)
        rows = self.db.fetch_all(
            """
            SELECT r.user AS user, h.value AS entry
            FROM reputations r, json_each(r.history) h
            ORDER BY json_extract(h.value, '$.timestamp') DESC, r.user ASC
            LIMIT ? OFFSET ?
            """,
            (limit, offset),
        )
        return [{"user": row["user"], **loads(row["entry"], {})} for row in rows]

    def stats(self) -> dict:
        rows = self.db.fetch_all("SELECT score, tier FROM reputations")
        total = len(rows)
        by_tier = {}
        for row in rows:
            bucket = by_tier.setdefault(row["tier"], {"tier": row["tier"], "count": 0, "total": 0})
            bucket["count"] += 1
            bucket["total"] += row["score"]
        tiers = sorted(
            ({"tier": b["tier"], "count": b["count"], "avg_score": b["total"] / b["count"]} for b in by_tier.values()),
            key=lambda b: b["avg_score"],
            reverse=True,
        )
        distribution = []
        for low, high in SCORE_BUCKETS:
            scores = [r["score"] for r in rows if r["score"] >= low and (high is None or r["score"] < high)]
            distribution.append({
                "range": f"{low}-{high}" if high is not None else f"{low}+",
                "count": len(scores),
                "avg_score": sum(scores) / len(scores) if scores else 0,
            })
        return {
            "total_users": total,
            "average_score": sum(r["score"] for r in rows) / total if total else 0,
            "by_tier": tiers,
            "score_distribution": distribution,
        }
