"""Dispute engine: evidence, juror assignment, voting and resolution.

Lifecycle: Pending -> InProgress -> Resolved, with Cancelled reachable
from either open state. Resolution happens inside the same transaction
as the final vote, so it can only happen once. Reputation and juror
registry updates run afterwards, from the call that resolved the case.
"""

import logging
import sqlite3
import time
from dataclasses import dataclass, field
from decimal import Decimal

from protocol import (
    DisputeStatus, DisputeAction, Vote, TieBreak, DISPUTE_TRANSITIONS, DISPUTE_OPEN_STATES,
    RESOLUTION_REASON, SYSTEM_ACTOR, ANONYMOUS_ACTOR, DEFAULT_PAGE_LIMIT,
)
from server.config import Settings
from server.errors import (
    MarketError, ConflictError, ForbiddenError, InvalidStateError, NotFoundError, ValidationError,
    normalize_address, optional_address, require_text, parse_amount, check_page, sum_amounts,
)
from server.store import Database, dumps, loads

logger = logging.getLogger(__name__)


def decide_winner(buyer_votes: int, seller_votes: int, tie_break: TieBreak = TieBreak.SELLER) -> Vote:
    """Side with more votes wins. Equal tallies go to the tie_break side."""
    if buyer_votes > seller_votes:
        return Vote.BUYER
    if seller_votes > buyer_votes:
        return Vote.SELLER
    return Vote.BUYER if tie_break == TieBreak.BUYER else Vote.SELLER


def parse_vote(value) -> Vote:
    try:
        vote = Vote(value)
    except ValueError:
        raise ValidationError("vote must be Buyer or Seller", "VALIDATION_INVALID_VALUE")
    if vote == Vote.NONE:
        raise ValidationError("vote must be Buyer or Seller", "VALIDATION_INVALID_VALUE")
    return vote


def normalize_files(files) -> list[dict]:
    """Validate evidence file references. Each needs a content hash."""
    if files is None:
        return []
    if not isinstance(files, list):
        raise ValidationError("files must be a list", "VALIDATION_INVALID_VALUE")
    out = []
    for f in files:
        if not isinstance(f, dict):
            raise ValidationError("each file must be an object", "VALIDATION_INVALID_VALUE")
        entry = {"name": f.get("name") or "", "hash": require_text(f.get("hash"), "files.hash")}
        if f.get("size") is not None:
            size = f["size"]
            if isinstance(size, bool) or not isinstance(size, int) or size < 0:
                raise ValidationError("file size must be a non-negative integer", "VALIDATION_INVALID_VALUE")
            entry["size"] = size
        if f.get("type"):
            entry["type"] = f["type"]
        out.append(entry)
    return out


@dataclass
class Dispute:
    """One arbitration case. Methods validate, then mutate in place."""
    dispute_id: int
    escrow_id: int
    buyer: str
    seller: str
    evidence: dict = field(default_factory=lambda: {"hash": None, "description": "", "files": []})
    jurors: list[dict] = field(default_factory=list)
    buyer_votes: int = 0
    seller_votes: int = 0
    total_stake: Decimal = Decimal("0")
    status: DisputeStatus = DisputeStatus.PENDING
    resolution: dict | None = None
    timeline: list[dict] = field(default_factory=list)
    version: int = 0
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)

    def log(self, action: DisputeAction, actor: str, details: str):
        now = time.time()
        self.timeline.append({"action": action.value, "actor": actor, "details": details, "timestamp": now})
        self.updated_at = now

    def _transition(self, new_status: DisputeStatus):
        if new_status not in DISPUTE_TRANSITIONS[self.status]:
            raise InvalidStateError(
                f"Cannot move dispute from {self.status.value} to {new_status.value}",
                "INVALID_STATE_DISPUTE",
            )
        self.status = new_status

    @property
    def all_voted(self) -> bool:
        return bool(self.jurors) and all(j["has_voted"] for j in self.jurors)

    def find_juror(self, address: str) -> dict | None:
        for j in self.jurors:
            if j["address"] == address:
                return j
        return None

    def add_evidence(self, files: list[dict], description: str | None = None, actor: str | None = None):
        if self.status not in DISPUTE_OPEN_STATES:
            raise InvalidStateError(
                f"Cannot add evidence to a {self.status.value} dispute", "INVALID_STATE_DISPUTE"
            )
        self.evidence["files"].extend(files)
        if description:
            self.evidence["description"] = description
        self.log(DisputeAction.EVIDENCE_ADDED, actor or ANONYMOUS_ACTOR, description or f"{len(files)} file(s) added")

    def assign_jurors(self, jurors: list[dict]):
        if self.status != DisputeStatus.PENDING:
            raise InvalidStateError(
                f"Cannot assign jurors to a {self.status.value} dispute", "INVALID_STATE_DISPUTE"
            )
        if not jurors:
            raise ValidationError("At least one juror required", "VALIDATION_MISSING_FIELD")
        assigned = []
        seen = set()
        for j in jurors:
            if not isinstance(j, dict):
                raise ValidationError("each juror must be an object", "VALIDATION_INVALID_VALUE")
            address = normalize_address(j.get("address"), "jurors.address")
            if address in seen:
                raise ValidationError(f"Duplicate juror: {address}", "VALIDATION_DUPLICATE_JUROR")
            seen.add(address)
            stake = parse_amount(j.get("stake"), "jurors.stake", allow_zero=True)
            assigned.append({"address": address, "stake": stake, "vote": Vote.NONE.value, "has_voted": False})
        self._transition(DisputeStatus.IN_PROGRESS)
        self.jurors = assigned
        self.total_stake = sum_amounts(j["stake"] for j in assigned)
        self.log(DisputeAction.JURORS_ASSIGNED, SYSTEM_ACTOR, f"{len(assigned)} jurors assigned")

    def cast_vote(self, juror_address: str, vote: Vote, tie_break: TieBreak = TieBreak.SELLER) -> bool:
        """Record one vote. Returns True if this vote resolved the dispute."""
        if self.status != DisputeStatus.IN_PROGRESS:
            raise InvalidStateError(f"Cannot vote on a {self.status.value} dispute", "INVALID_STATE_DISPUTE")
        juror = self.find_juror(juror_address)
        if juror is None:
            raise ForbiddenError("Not an assigned juror for this dispute", "FORBIDDEN_NOT_JUROR")
        if juror["has_voted"]:
            raise ConflictError("Juror has already voted", "CONFLICT_ALREADY_VOTED")

        juror["vote"] = vote.value
        juror["has_voted"] = True
        if vote == Vote.BUYER:
            self.buyer_votes += 1
        else:
            self.seller_votes += 1
        self.log(DisputeAction.VOTE_CAST, juror_address, f"Voted for {vote.value}")

        if self.all_voted:
            self.resolve(tie_break)
            return True
        return False

    def resolve(self, tie_break: TieBreak = TieBreak.SELLER):
        side = decide_winner(self.buyer_votes, self.seller_votes, tie_break)
        self._transition(DisputeStatus.RESOLVED)
        winner = self.buyer if side == Vote.BUYER else self.seller
        self.resolution = {
            "winner": winner,
            "side": side.value,
            "reason": RESOLUTION_REASON,
            "resolved_at": time.time(),
        }
        self.log(DisputeAction.RESOLVED, SYSTEM_ACTOR, f"Resolved in favor of {side.value} {winner}")

    def cancel(self, actor: str, reason: str | None = None):
        self._transition(DisputeStatus.CANCELLED)
        self.log(DisputeAction.CANCELLED, actor, reason or "Dispute cancelled")

    def to_dict(self) -> dict:
        return {
            "dispute_id": self.dispute_id,
            "escrow_id": self.escrow_id,
            "buyer": self.buyer,
            "seller": self.seller,
            "evidence": self.evidence,
            "jurors": [{**j, "stake": str(j["stake"])} for j in self.jurors],
            "votes": {
                "buyer_votes": self.buyer_votes,
                "seller_votes": self.seller_votes,
                "total_stake": str(self.total_stake),
            },
            "status": self.status.value,
            "resolution": self.resolution,
            "timeline": self.timeline,
            "version": self.version,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


class DisputeManager:
    """SQLite-backed dispute engine."""

    def __init__(self, db: Database, reputation=None, jurors=None, settings: Settings | None = None):
        self.db = db
        self.reputation = reputation
        self.jurors = jurors
        self.settings = settings or Settings()

    # --- persistence ---

    @staticmethod
    def _row_to_dispute(row) -> Dispute:
        jurors = loads(row["jurors"], [])
        for j in jurors:
            j["stake"] = Decimal(j["stake"])
        return Dispute(
            dispute_id=row["dispute_id"],
            escrow_id=row["escrow_id"],
            buyer=row["buyer"],
            seller=row["seller"],
            evidence=loads(row["evidence"], {}),
            jurors=jurors,
            buyer_votes=row["buyer_votes"],
            seller_votes=row["seller_votes"],
            total_stake=Decimal(row["total_stake"]),
            status=DisputeStatus(row["status"]),
            resolution=loads(row["resolution"]),
            timeline=loads(row["timeline"], []),
            version=row["version"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def _save(self, conn, dispute: Dispute):
        """Write back with a version compare-and-set."""
        d = dispute.to_dict()
        cur = conn.execute(
            """
            UPDATE disputes SET evidence = ?, jurors = ?, buyer_votes = ?, seller_votes = ?,
                total_stake = ?, status = ?, resolution = ?, timeline = ?,
                version = version + 1, updated_at = ?
            WHERE dispute_id = ? AND version = ?
            """,
            (dumps(d["evidence"]), dumps(d["jurors"]), dispute.buyer_votes, dispute.seller_votes,
             str(dispute.total_stake), dispute.status.value,
             dumps(dispute.resolution) if dispute.resolution else None,
             dumps(dispute.timeline), dispute.updated_at, dispute.dispute_id, dispute.version),
        )
        if cur.rowcount != 1:
            raise ConflictError("Dispute was modified concurrently", "CONFLICT_CONCURRENT_UPDATE")
        dispute.version += 1

    def _mutate(self, dispute_id: int, fn) -> tuple[Dispute, object]:
        with self.db.transaction() as conn:
            row = conn.execute("SELECT * FROM disputes WHERE dispute_id = ?", (dispute_id,)).fetchone()
            if row is None:
                raise NotFoundError("Dispute not found", "NOT_FOUND_DISPUTE")
            dispute = self._row_to_dispute(row)
            result = fn(dispute)
            self._save(conn, dispute)
        return dispute, result

    def insert(self, conn, escrow_id: int, buyer: str, seller: str, evidence_hash: str,
               description: str = "", files: list[dict] | None = None, actor: str | None = None,
               details: str = "Dispute initiated") -> Dispute:
        """Insert a Pending dispute using an open transaction's connection."""
        if conn.execute("SELECT 1 FROM disputes WHERE escrow_id = ?", (escrow_id,)).fetchone():
            raise ConflictError(f"Dispute already exists for escrow {escrow_id}", "CONFLICT_DISPUTE_EXISTS")
        dispute = Dispute(
            dispute_id=Database.next_id(conn, "disputes", "dispute_id"),
            escrow_id=escrow_id,
            buyer=buyer,
            seller=seller,
            evidence={"hash": evidence_hash, "description": description or "", "files": list(files or [])},
        )
        dispute.log(DisputeAction.CREATED, actor or buyer, details)
        d = dispute.to_dict()
        try:
            conn.execute(
                """
                INSERT INTO disputes (dispute_id, escrow_id, buyer, seller, evidence, jurors,
                    status, timeline, version, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, 0, ?, ?)
                """,
                (dispute.dispute_id, escrow_id, buyer, seller, dumps(d["evidence"]), dumps(d["jurors"]),
                 dispute.status.value, dumps(dispute.timeline), dispute.created_at, dispute.updated_at),
            )
        except sqlite3.IntegrityError as e:
            raise ConflictError(f"Dispute already exists for escrow {escrow_id}", "CONFLICT_DISPUTE_EXISTS") from e
        return dispute

    # --- operations ---

    def create(self, escrow_id: int, buyer: str, seller: str, evidence: dict, actor: str | None = None) -> Dispute:
        if isinstance(escrow_id, bool) or not isinstance(escrow_id, int) or escrow_id < 1:
            raise ValidationError("escrow_id must be a positive integer", "VALIDATION_INVALID_VALUE")
        buyer = normalize_address(buyer, "buyer")
        seller = normalize_address(seller, "seller")
        if buyer == seller:
            raise ValidationError("Buyer and seller cannot be the same", "VALIDATION_SAME_PARTY")
        evidence = evidence or {}
        if not isinstance(evidence, dict):
            raise ValidationError("evidence must be an object", "VALIDATION_INVALID_VALUE")
        evidence_hash = require_text(evidence.get("hash"), "evidence.hash")
        files = normalize_files(evidence.get("files"))

        with self.db.transaction() as conn:
            dispute = self.insert(conn, escrow_id, buyer, seller, evidence_hash,
                                  evidence.get("description") or "", files, optional_address(actor, "actor"))
        logger.info("Dispute #%d created for escrow #%d", dispute.dispute_id, escrow_id)
        return dispute

    def add_evidence(self, dispute_id: int, files=None, description: str | None = None,
                     actor: str | None = None) -> Dispute:
        files = normalize_files(files)
        if not files and not description:
            raise ValidationError("Provide files or a description", "VALIDATION_MISSING_FIELD")
        actor = optional_address(actor, "actor")
        dispute, _ = self._mutate(dispute_id, lambda d: d.add_evidence(files, description, actor))
        logger.info("Evidence added to dispute #%d (%d files)", dispute_id, len(files))
        return dispute

    def assign_jurors(self, dispute_id: int, jurors: list[dict]) -> Dispute:
        if self.settings.require_registered_jurors:
            self._check_registered(jurors)
        dispute, _ = self._mutate(dispute_id, lambda d: d.assign_jurors(jurors))
        logger.info("Dispute #%d: %d jurors assigned, now %s", dispute_id, len(dispute.jurors), dispute.status.value)
        return dispute

    def _check_registered(self, jurors: list[dict]):
        if self.jurors is None:
            raise ValidationError("No juror registry configured", "VALIDATION_JUROR_NOT_REGISTERED")
        for j in jurors or []:
            address = normalize_address(j.get("address"), "jurors.address")
            if not self.jurors.is_eligible(address):
                raise ValidationError(f"{address} is not an active registered juror",
                                      "VALIDATION_JUROR_NOT_REGISTERED")

    def cast_vote(self, dispute_id: int, juror_address: str, vote) -> Dispute:
        juror_address = normalize_address(juror_address, "juror")
        vote = parse_vote(vote)
        tie_break = self.settings.tie_break
        dispute, resolved = self._mutate(dispute_id, lambda d: d.cast_vote(juror_address, vote, tie_break))
        logger.info("Dispute #%d: %s voted %s", dispute_id, juror_address, vote.value)
        if resolved:
            logger.info("Dispute #%d resolved, winner %s", dispute_id, dispute.resolution["winner"])
            self._on_resolved(dispute)
        return dispute

    def cancel(self, dispute_id: int, actor: str, reason: str | None = None) -> Dispute:
        actor = normalize_address(actor, "actor")
        dispute, _ = self._mutate(dispute_id, lambda d: d.cancel(actor, reason))
        logger.info("Dispute #%d cancelled by %s", dispute_id, actor)
        return dispute

    def _on_resolved(self, dispute: Dispute):
        """Post-commit side effects. Failures are logged, never raised."""
        winner = dispute.resolution["winner"]
        if self.reputation is not None:
            for party in (dispute.buyer, dispute.seller):
                try:
                    self.reputation.record_arbitration(party, party == winner, dispute.dispute_id)
                    if self.settings.auto_award_badges:
                        self.reputation.auto_award_badges(party)
                except MarketError:
                    logger.exception("Reputation update failed for %s on dispute #%d", party, dispute.dispute_id)
        if self.jurors is not None:
            winning_side = dispute.resolution["side"]
            for j in dispute.jurors:
                try:
                    self.jurors.record_case(j["address"], j["vote"] == winning_side)
                except MarketError:
                    logger.exception("Juror update failed for %s on dispute #%d", j["address"], dispute.dispute_id)

    # --- queries ---

    def get(self, dispute_id: int) -> Dispute | None:
        row = self.db.fetch_one("SELECT * FROM disputes WHERE dispute_id = ?", (dispute_id,))
        return self._row_to_dispute(row) if row else None

    def require(self, dispute_id: int) -> Dispute:
        dispute = self.get(dispute_id)
        if dispute is None:
            raise NotFoundError("Dispute not found", "NOT_FOUND_DISPUTE")
        return dispute

    def get_by_escrow(self, escrow_id: int) -> Dispute | None:
        row = self.db.fetch_one("SELECT * FROM disputes WHERE escrow_id = ?", (escrow_id,))
        return self._row_to_dispute(row) if row else None

    def list(self, status: str | None = None, participant: str | None = None,
             limit: int = DEFAULT_PAGE_LIMIT, offset: int = 0) -> tuple[list[Dispute], int]:
        """Newest first. `participant` matches buyer, seller or any assigned juror."""
        limit, offset = check_page(limit, offset)
        clauses, params = [], []
        if status:
            try:
                clauses.append("status = ?")
                params.append(DisputeStatus(status).value)
            except ValueError:
                raise ValidationError(f"Unknown dispute status: {status}", "VALIDATION_INVALID_VALUE")
        if participant:
            participant = normalize_address(participant, "participant")
            clauses.append(
                "(buyer = ? OR seller = ? OR EXISTS ("
                "SELECT 1 FROM json_each(disputes.jurors) j WHERE json_extract(j.value, '$.address') = ?))"
            )
            params.extend([participant] * 3)
        where = " AND ".join(clauses)
        sql = "SELECT * FROM disputes"
        if where:
            sql += f" WHERE {where}"
        sql += " ORDER BY dispute_id DESC LIMIT ? OFFSET ?"
        rows = self.db.fetch_all(sql, (*params, limit, offset))
        total = self.db.count("disputes", where, tuple(params))
        return [self._row_to_dispute(r) for r in rows], total

    def get_stats(self) -> dict:
        rows = self.db.fetch_all("SELECT status, COUNT(*) AS n FROM disputes GROUP BY status")
        by_status = {s.value: 0 for s in DisputeStatus}
        for row in rows:
            by_status[row["status"]] = row["n"]
        return {
            "total": sum(by_status.values()),
            "active": by_status[DisputeStatus.PENDING.value] + by_status[DisputeStatus.IN_PROGRESS.value],
            "resolved": by_status[DisputeStatus.RESOLVED.value],
            "by_status": by_status,
        }
