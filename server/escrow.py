"""Escrow records for the marketplace.

An escrow locks `amount` between a buyer and a seller. It completes when
both parties confirm, or moves to Disputed when either raises a dispute,
which opens a linked case in the dispute engine. Token movement is handled
elsewhere; this module only tracks the agreement state.
"""

import logging
import time
from dataclasses import dataclass, field
from decimal import Decimal

from protocol import EscrowStatus, EscrowAction, ESCROW_TRANSITIONS, SYSTEM_ACTOR, DEFAULT_PAGE_LIMIT
from server.config import Settings
from server.disputes import Dispute, DisputeManager
from server.errors import (
    MarketError, ConflictError, ForbiddenError, InvalidStateError, NotFoundError, ValidationError,
    normalize_address, optional_address, require_text, parse_amount, check_page, sum_amounts,
)
from server.store import Database, dumps, loads

logger = logging.getLogger(__name__)


@dataclass
class Escrow:
    """Fund-lock agreement between buyer and seller."""
    escrow_id: int
    buyer: str
    seller: str
    amount: Decimal
    terms_hash: str
    arbitrator: str | None = None
    token_address: str | None = None
    status: EscrowStatus = EscrowStatus.ACTIVE
    buyer_confirmed: bool = False
    seller_confirmed: bool = False
    evidence_hash: str | None = None
    evidence_description: str | None = None
    timeline: list[dict] = field(default_factory=list)
    version: int = 0
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)
    completed_at: float | None = None

    def log(self, action: EscrowAction, actor: str, details: str):
        now = time.time()
        self.timeline.append({"action": action.value, "actor": actor, "details": details, "timestamp": now})
        self.updated_at = now

    def _transition(self, new_status: EscrowStatus):
        if new_status not in ESCROW_TRANSITIONS[self.status]:
            raise InvalidStateError(
                f"Cannot move escrow from {self.status.value} to {new_status.value}",
                "INVALID_STATE_ESCROW",
            )
        self.status = new_status

    def _check_party(self, user: str, action: str):
        if self.status != EscrowStatus.ACTIVE:
            raise InvalidStateError(f"Cannot {action} a {self.status.value} escrow", "INVALID_STATE_ESCROW")
        if user not in (self.buyer, self.seller):
            raise ForbiddenError(f"Only buyer or seller can {action}", "FORBIDDEN_NOT_PARTY")

    def confirm(self, user: str) -> bool:
        """Record a party's confirmation. Returns True if this call completed the escrow.

        Confirming twice is a no-op.
        """
        self._check_party(user, "confirm")
        if user == self.buyer:
            if self.buyer_confirmed:
                return False
            self.buyer_confirmed = True
        else:
            if self.seller_confirmed:
                return False
            self.seller_confirmed = True
        self.log(EscrowAction.CONFIRMED, user, "User confirmed completion")

        if self.buyer_confirmed and self.seller_confirmed:
            self._transition(EscrowStatus.COMPLETED)
            self.completed_at = time.time()
            self.log(EscrowAction.COMPLETED, SYSTEM_ACTOR, "Both parties confirmed completion")
            return True
        return False

    def open_dispute(self, user: str, evidence_hash: str, description: str | None = None):
        self._check_party(user, "dispute")
        self._transition(EscrowStatus.DISPUTED)
        self.evidence_hash = evidence_hash
        self.evidence_description = description or ""
        self.log(EscrowAction.DISPUTED, user, "Dispute initiated")

    def cancel(self, user: str, reason: str | None = None):
        if self.status != EscrowStatus.ACTIVE:
            raise InvalidStateError(f"Cannot cancel a {self.status.value} escrow", "INVALID_STATE_ESCROW")
        if user not in (self.buyer, self.seller, self.arbitrator):
            raise ForbiddenError("Only buyer, seller or arbitrator can cancel", "FORBIDDEN_NOT_PARTY")
        self._transition(EscrowStatus.CANCELLED)
        self.log(EscrowAction.CANCELLED, user, reason or "Escrow cancelled")

    def to_dict(self) -> dict:
        return {
            "escrow_id": self.escrow_id,
            "buyer": self.buyer,
            "seller": self.seller,
            "arbitrator": self.arbitrator,
            "amount": str(self.amount),
            "token_address": self.token_address,
            "terms_hash": self.terms_hash,
            "status": self.status.value,
            "buyer_confirmed": self.buyer_confirmed,
            "seller_confirmed": self.seller_confirmed,
            "evidence_hash": self.evidence_hash,
            "evidence_description": self.evidence_description,
            "timeline": self.timeline,
            "version": self.version,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "completed_at": self.completed_at,
        }


class EscrowManager:
    """SQLite-backed escrow records, wired to reputation and disputes."""

    def __init__(self, db: Database, reputation=None, disputes: DisputeManager | None = None,
                 settings: Settings | None = None):
        self.db = db
        self.settings = settings or Settings()
        self.reputation = reputation
        self.disputes = disputes or DisputeManager(db, reputation=reputation, settings=self.settings)

    @staticmethod
    def _row_to_escrow(row) -> Escrow:
        return Escrow(
            escrow_id=row["escrow_id"],
            buyer=row["buyer"],
            seller=row["seller"],
            amount=Decimal(row["amount"]),
            terms_hash=row["terms_hash"],
            arbitrator=row["arbitrator"],
            token_address=row["token_address"],
            status=EscrowStatus(row["status"]),
            buyer_confirmed=bool(row["buyer_confirmed"]),
            seller_confirmed=bool(row["seller_confirmed"]),
            evidence_hash=row["evidence_hash"],
            evidence_description=row["evidence_description"],
            timeline=loads(row["timeline"], []),
            version=row["version"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            completed_at=row["completed_at"],
        )

    def _save(self, conn, escrow: Escrow):
        cur = conn.execute(
            """
            UPDATE escrows SET status = ?, buyer_confirmed = ?, seller_confirmed = ?,
                evidence_hash = ?, evidence_description = ?, timeline = ?,
                version = version + 1, updated_at = ?, completed_at = ?
            WHERE escrow_id = ? AND version = ?
            """,
            (escrow.status.value, int(escrow.buyer_confirmed), int(escrow.seller_confirmed),
             escrow.evidence_hash, escrow.evidence_description, dumps(escrow.timeline),
             escrow.updated_at, escrow.completed_at, escrow.escrow_id, escrow.version),
        )
        if cur.rowcount != 1:
            raise ConflictError("Escrow was modified concurrently", "CONFLICT_CONCURRENT_UPDATE")
        escrow.version += 1

    def _load(self, conn, escrow_id: int) -> Escrow:
        row = conn.execute("SELECT * FROM escrows WHERE escrow_id = ?", (escrow_id,)).fetchone()
        if row is None:
            raise NotFoundError("Escrow not found", "NOT_FOUND_ESCROW")
        return self._row_to_escrow(row)

    def _mutate(self, escrow_id: int, fn) -> tuple[Escrow, object]:
        with self.db.transaction() as conn:
            escrow = self._load(conn, escrow_id)
            entries = len(escrow.timeline)
            result = fn(escrow)
            # Every real change appends to the timeline; skip the write on no-ops
            if len(escrow.timeline) != entries:
                self._save(conn, escrow)
        return escrow, result

    # --- operations ---

    def create(self, buyer: str, seller: str, amount, terms_hash: str,
               arbitrator: str | None = None, token_address: str | None = None) -> Escrow:
        buyer = normalize_address(buyer, "buyer")
        seller = normalize_address(seller, "seller")
        if buyer == seller:
            raise ValidationError("Buyer and seller cannot be the same", "VALIDATION_SAME_PARTY")
        amount = parse_amount(amount)
        terms_hash = require_text(terms_hash, "terms_hash")
        arbitrator = optional_address(arbitrator, "arbitrator")
        token_address = optional_address(token_address, "token_address")

        with self.db.transaction() as conn:
            escrow = Escrow(
                escrow_id=Database.next_id(conn, "escrows", "escrow_id"),
                buyer=buyer,
                seller=seller,
                amount=amount,
                terms_hash=terms_hash,
                arbitrator=arbitrator,
                token_address=token_address,
            )
            escrow.log(EscrowAction.CREATED, buyer, f"Escrow created with {amount} tokens")
            conn.execute(
                """
                INSERT INTO escrows (escrow_id, buyer, seller, arbitrator, amount, token_address, terms_hash,
                    status, timeline, version, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, 0, ?, ?)
                """,
                (escrow.escrow_id, buyer, seller, arbitrator, str(amount), token_address, terms_hash,
                 escrow.status.value, dumps(escrow.timeline), escrow.created_at, escrow.updated_at),
            )
        logger.info("Escrow #%d created: %s -> %s, %s", escrow.escrow_id, buyer, seller, amount)
        return escrow

    def confirm(self, escrow_id: int, user: str) -> Escrow:
        user = normalize_address(user, "user")
        escrow, completed = self._mutate(escrow_id, lambda e: e.confirm(user))
        if completed:
            logger.info("Escrow #%d completed", escrow_id)
            self._on_completed(escrow)
        return escrow

    def open_dispute(self, escrow_id: int, user: str, evidence_hash: str,
                     evidence_description: str | None = None) -> tuple[Escrow, Dispute]:
        """Move the escrow to Disputed and open its dispute, atomically."""
        user = normalize_address(user, "user")
        evidence_hash = require_text(evidence_hash, "evidence_hash")
        with self.db.transaction() as conn:
            escrow = self._load(conn, escrow_id)
            escrow.open_dispute(user, evidence_hash, evidence_description)
            self._save(conn, escrow)
            dispute = self.disputes.insert(
                conn, escrow.escrow_id, escrow.buyer, escrow.seller, evidence_hash,
                evidence_description or "", actor=user, details="Dispute initiated from escrow",
            )
        logger.info("Escrow #%d disputed by %s, dispute #%d opened", escrow_id, user, dispute.dispute_id)
        return escrow, dispute

    def cancel(self, escrow_id: int, user: str, reason: str | None = None) -> Escrow:
        user = normalize_address(user, "user")
        escrow, _ = self._mutate(escrow_id, lambda e: e.cancel(user, reason))
        logger.info("Escrow #%d cancelled by %s", escrow_id, user)
        return escrow

    def _on_completed(self, escrow: Escrow):
        """Post-commit reputation updates for both parties. Failures are logged."""
        if self.reputation is None:
            return
        for party in (escrow.buyer, escrow.seller):
            try:
                self.reputation.record_transaction(party, True, escrow.escrow_id)
                if self.settings.auto_award_badges:
                    self.reputation.auto_award_badges(party)
            except MarketError:
                logger.exception("Reputation update failed for %s on escrow #%d", party, escrow.escrow_id)

    # --- queries ---

    def get(self, escrow_id: int) -> Escrow | None:
        row = self.db.fetch_one("SELECT * FROM escrows WHERE escrow_id = ?", (escrow_id,))
        return self._row_to_escrow(row) if row else None

    def require(self, escrow_id: int) -> Escrow:
        escrow = self.get(escrow_id)
        if escrow is None:
            raise NotFoundError("Escrow not found", "NOT_FOUND_ESCROW")
        return escrow

    def stats(self) -> dict:
        by_status = {s.value: {"count": 0, "amounts": []} for s in EscrowStatus}
        for row in self.db.fetch_all("SELECT status, amount FROM escrows"):
            bucket = by_status[row["status"]]
            bucket["count"] += 1
            bucket["amounts"].append(Decimal(row["amount"]))
        counts = {status: b["count"] for status, b in by_status.items()}
        return {
            "total": sum(counts.values()),
            "active": counts[EscrowStatus.ACTIVE.value],
            "completed": counts[EscrowStatus.COMPLETED.value],
            "disputed": counts[EscrowStatus.DISPUTED.value],
            "cancelled": counts[EscrowStatus.CANCELLED.value],
            "by_status": {
                status: {"count": b["count"], "total_amount": str(sum_amounts(b["amounts"]))}
                for status, b in by_status.items()
            },
        }

    def list(self, status: str | None = None, user: str | None = None,
             limit: int = DEFAULT_PAGE_LIMIT, offset: int = 0) -> tuple[list[Escrow], int]:
        """Newest first. `user` matches buyer or seller."""
        limit, offset = check_page(limit, offset)
        clauses, params = [], []
        if status:
            try:
                params.append(EscrowStatus(status).value)
            except ValueError:
                raise ValidationError(f"Unknown escrow status: {status}", "VALIDATION_INVALID_VALUE")
            clauses.append("status = ?")
        if user:
            user = normalize_address(user, "user")
            clauses.append("(buyer = ? OR seller = ?)")
            params.extend([user, user])
        where = " AND ".join(clauses)
        sql = "SELECT * FROM escrows"
        if where:
            sql += f" WHERE {where}"
        sql += " ORDER BY escrow_id DESC LIMIT ? OFFSET ?"
        rows = self.db.fetch_all(sql, (*params, limit, offset))
        total = self.db.count("escrows", where, tuple(params))
        return [self._row_to_escrow(r) for r in rows], total
