"""Tests for server/disputes.py -- evidence, jurors, voting, resolution."""

import threading
from decimal import Decimal

import pytest

from conftest import BUYER, SELLER, JUROR_1, JUROR_2, JUROR_3, make_evidence, two_jurors
from protocol import DisputeStatus, TieBreak, Vote
from server.config import Settings
from server.disputes import Dispute, DisputeManager, decide_winner
from server.errors import (
    ConflictError, ForbiddenError, InvalidStateError, NotFoundError, ValidationError,
)
from server.reputation import ReputationManager


# --- Pure helpers ---

class TestDecideWinner:
    def test_majority(self):
        assert decide_winner(2, 1) == Vote.BUYER
        assert decide_winner(0, 3) == Vote.SELLER

    def test_tie_defaults_to_seller(self):
        assert decide_winner(1, 1) == Vote.SELLER
        assert decide_winner(0, 0) == Vote.SELLER

    def test_tie_break_buyer(self):
        assert decide_winner(2, 2, TieBreak.BUYER) == Vote.BUYER
        assert decide_winner(1, 2, TieBreak.BUYER) == Vote.SELLER


class TestDisputeModel:
    def make(self):
        return Dispute(dispute_id=1, escrow_id=1, buyer=BUYER, seller=SELLER)

    def test_vote_before_assignment(self):
        d = self.make()
        with pytest.raises(InvalidStateError):
            d.cast_vote(JUROR_1, Vote.BUYER)

    def test_assign_requires_jurors(self):
        d = self.make()
        with pytest.raises(ValidationError):
            d.assign_jurors([])
        assert d.status == DisputeStatus.PENDING

    def test_assign_rejects_duplicates(self):
        d = self.make()
        with pytest.raises(ValidationError):
            d.assign_jurors([{"address": JUROR_1, "stake": 1}, {"address": JUROR_1.upper(), "stake": 1}])
        assert d.jurors == []

    def test_assign_rejects_negative_stake(self):
        d = self.make()
        with pytest.raises(ValidationError):
            d.assign_jurors([{"address": JUROR_1, "stake": -1}])

    def test_total_stake_is_exact(self):
        d = self.make()
        d.assign_jurors([
            {"address": JUROR_1, "stake": "10000000000000000000000000000"},
            {"address": JUROR_2, "stake": "1"},
        ])
        assert str(d.total_stake) == "10000000000000000000000000001"
        assert d.to_dict()["votes"]["total_stake"] == "10000000000000000000000000001"

    @pytest.mark.parametrize("stake", ["1E+999999", "1" + "0" * 78, "0.0000000000000000001"])
    def test_assign_rejects_unrepresentable_stake(self, stake):
        d = self.make()
        with pytest.raises(ValidationError):
            d.assign_jurors([{"address": JUROR_1, "stake": stake}])
        assert d.status == DisputeStatus.PENDING

    def test_resolution_only_after_last_vote(self):
        d = self.make()
        d.assign_jurors(two_jurors())
        assert d.total_stake == Decimal("1000")
        assert d.cast_vote(JUROR_1, Vote.SELLER) is False
        assert d.status == DisputeStatus.IN_PROGRESS
        assert d.cast_vote(JUROR_2, Vote.SELLER) is True
        assert d.status == DisputeStatus.RESOLVED
        assert d.resolution["winner"] == SELLER
        assert d.resolution["reason"] == "All jurors voted"
        actions = [e["action"] for e in d.timeline]
        assert actions == ["Jurors Assigned", "Vote Cast", "Vote Cast", "Dispute Resolved"]


# --- Manager ---

class TestCreate:
    def test_create(self, disputes):
        d = disputes.create(1, "0xAAA", SELLER, make_evidence())
        assert d.dispute_id == 1
        assert d.buyer == BUYER
        assert d.status == DisputeStatus.PENDING
        assert d.buyer_votes == d.seller_votes == 0
        assert d.timeline[0]["action"] == "Dispute Created"
        assert d.timeline[0]["actor"] == BUYER

    def test_sequential_ids(self, disputes):
        disputes.create(1, BUYER, SELLER, make_evidence())
        assert disputes.create(2, BUYER, SELLER, make_evidence()).dispute_id == 2

    def test_one_dispute_per_escrow(self, disputes):
        disputes.create(1, BUYER, SELLER, make_evidence())
        with pytest.raises(ConflictError):
            disputes.create(1, BUYER, SELLER, make_evidence())

    def test_same_party(self, disputes):
        with pytest.raises(ValidationError):
            disputes.create(1, BUYER, BUYER.upper(), make_evidence())

    def test_evidence_hash_required(self, disputes):
        with pytest.raises(ValidationError):
            disputes.create(1, BUYER, SELLER, make_evidence(hash=""))

    def test_initial_files(self, disputes):
        d = disputes.create(1, BUYER, SELLER, make_evidence(files=[{"name": "a.png", "hash": "QmA", "size": 10}]))
        assert disputes.require(d.dispute_id).evidence["files"] == [{"name": "a.png", "hash": "QmA", "size": 10}]


class TestEvidence:
    def test_add_evidence_appends(self, disputes):
        d = disputes.create(1, BUYER, SELLER, make_evidence(files=[{"name": "a", "hash": "QmA"}]))
        d = disputes.add_evidence(d.dispute_id, [{"name": "b", "hash": "QmB"}], "More detail", actor=BUYER)
        assert [f["hash"] for f in d.evidence["files"]] == ["QmA", "QmB"]
        assert d.evidence["description"] == "More detail"
        assert d.timeline[-1]["action"] == "Evidence Added"
        assert d.timeline[-1]["actor"] == BUYER

    def test_anonymous_actor(self, disputes):
        d = disputes.create(1, BUYER, SELLER, make_evidence())
        d = disputes.add_evidence(d.dispute_id, description="note")
        assert d.timeline[-1]["actor"] == "anonymous"
        assert d.evidence["description"] == "note"

    def test_file_needs_hash(self, disputes):
        d = disputes.create(1, BUYER, SELLER, make_evidence())
        with pytest.raises(ValidationError):
            disputes.add_evidence(d.dispute_id, [{"name": "no-hash"}])

    def test_allowed_while_in_progress(self, disputes):
        d = disputes.create(1, BUYER, SELLER, make_evidence())
        disputes.assign_jurors(d.dispute_id, two_jurors())
        d = disputes.add_evidence(d.dispute_id, [{"hash": "QmLate"}])
        assert d.evidence["files"][-1]["hash"] == "QmLate"

    def test_rejected_after_resolution(self, disputes):
        d = disputes.create(1, BUYER, SELLER, make_evidence())
        disputes.assign_jurors(d.dispute_id, [{"address": JUROR_1, "stake": 1}])
        disputes.cast_vote(d.dispute_id, JUROR_1, "Buyer")
        with pytest.raises(InvalidStateError):
            disputes.add_evidence(d.dispute_id, [{"hash": "QmLate"}])

    def test_missing_dispute(self, disputes):
        with pytest.raises(NotFoundError):
            disputes.add_evidence(99, [{"hash": "QmX"}])


class TestJurorAssignment:
    def test_assign(self, disputes):
        d = disputes.create(1, BUYER, SELLER, make_evidence())
        d = disputes.assign_jurors(d.dispute_id, two_jurors())
        assert d.status == DisputeStatus.IN_PROGRESS
        assert d.total_stake == Decimal("1000")
        assert all(j["vote"] == "None" and not j["has_voted"] for j in d.jurors)
        assert d.timeline[-1]["details"] == "2 jurors assigned"

    def test_assign_once(self, disputes):
        d = disputes.create(1, BUYER, SELLER, make_evidence())
        disputes.assign_jurors(d.dispute_id, two_jurors())
        with pytest.raises(InvalidStateError):
            disputes.assign_jurors(d.dispute_id, [{"address": JUROR_3, "stake": 1}])
        assert [j["address"] for j in disputes.require(d.dispute_id).jurors] == [JUROR_1, JUROR_2]

    def test_require_registered(self, db, reputation, jurors):
        mgr = DisputeManager(db, reputation, jurors, Settings(require_registered_jurors=True))
        d = mgr.create(1, BUYER, SELLER, make_evidence())
        jurors.register(JUROR_1, 1000)
        with pytest.raises(ValidationError):
            mgr.assign_jurors(d.dispute_id, two_jurors())
        jurors.register(JUROR_2, 1000)
        assert mgr.assign_jurors(d.dispute_id, two_jurors()).status == DisputeStatus.IN_PROGRESS


class TestVoting:
    @pytest.fixture
    def dispute(self, disputes):
        d = disputes.create(1, BUYER, SELLER, make_evidence())
        return disputes.assign_jurors(d.dispute_id, two_jurors())

    def test_first_vote_keeps_in_progress(self, disputes, dispute):
        d = disputes.cast_vote(dispute.dispute_id, JUROR_1, "Buyer")
        assert d.buyer_votes == 1
        assert d.status == DisputeStatus.IN_PROGRESS
        assert d.resolution is None

    def test_double_vote(self, disputes, dispute):
        disputes.cast_vote(dispute.dispute_id, JUROR_1, "Buyer")
        with pytest.raises(ConflictError):
            disputes.cast_vote(dispute.dispute_id, JUROR_1, "Seller")
        d = disputes.require(dispute.dispute_id)
        assert (d.buyer_votes, d.seller_votes) == (1, 0)

    def test_non_juror(self, disputes, dispute):
        with pytest.raises(ForbiddenError):
            disputes.cast_vote(dispute.dispute_id, "0xstranger", "Buyer")
        d = disputes.require(dispute.dispute_id)
        assert (d.buyer_votes, d.seller_votes) == (0, 0)

    def test_invalid_vote(self, disputes, dispute):
        with pytest.raises(ValidationError):
            disputes.cast_vote(dispute.dispute_id, JUROR_1, "None")
        with pytest.raises(ValidationError):
            disputes.cast_vote(dispute.dispute_id, JUROR_1, "Maybe")

    def test_tie_goes_to_seller(self, disputes, reputation, dispute):
        disputes.cast_vote(dispute.dispute_id, JUROR_1, "Buyer")
        d = disputes.cast_vote(dispute.dispute_id, JUROR_2, "Seller")
        assert d.status == DisputeStatus.RESOLVED
        assert d.resolution["winner"] == SELLER
        assert reputation.require(SELLER).arb_won == 1
        assert reputation.require(BUYER).arb_lost == 1

    def test_tie_break_buyer_policy(self, db, reputation):
        mgr = DisputeManager(db, reputation, settings=Settings(tie_break=TieBreak.BUYER))
        d = mgr.create(1, BUYER, SELLER, make_evidence())
        mgr.assign_jurors(d.dispute_id, two_jurors())
        mgr.cast_vote(d.dispute_id, JUROR_1, "Buyer")
        d = mgr.cast_vote(d.dispute_id, JUROR_2, "Seller")
        assert d.resolution["winner"] == BUYER

    def test_vote_after_resolution(self, disputes, dispute):
        disputes.cast_vote(dispute.dispute_id, JUROR_1, "Buyer")
        disputes.cast_vote(dispute.dispute_id, JUROR_2, "Buyer")
        with pytest.raises(InvalidStateError):
            disputes.cast_vote(dispute.dispute_id, JUROR_1, "Seller")

    def test_juror_registry_updated(self, disputes, jurors, dispute):
        jurors.register(JUROR_1, 1000)
        jurors.register(JUROR_2, 1000)
        disputes.cast_vote(dispute.dispute_id, JUROR_1, "Buyer")
        disputes.cast_vote(dispute.dispute_id, JUROR_2, "Seller")
        # Tie -> seller wins; only JUROR_2 sided with the outcome
        j1, j2 = jurors.require(JUROR_1), jurors.require(JUROR_2)
        assert (j1.disputes_participated, j1.disputes_resolved) == (1, 0)
        assert (j2.disputes_participated, j2.disputes_resolved) == (1, 1)
        assert j2.accuracy == 100.0

    def test_auto_badges_after_resolution(self, disputes, reputation, dispute):
        for n in range(4):
            reputation.record_arbitration(BUYER, True, related_id=100 + n)
        assert not reputation.require(BUYER).has_badge("Arbitration Expert")
        disputes.cast_vote(dispute.dispute_id, JUROR_1, "Buyer")
        disputes.cast_vote(dispute.dispute_id, JUROR_2, "Buyer")
        buyer = reputation.require(BUYER)
        assert buyer.arb_participated == 5
        assert [b["name"] for b in buyer.badges] == ["Arbitration Expert"]
        # The losing seller qualifies for nothing
        assert reputation.require(SELLER).badges == []

    def test_auto_badges_disabled(self, db, reputation):
        mgr = DisputeManager(db, reputation, settings=Settings(auto_award_badges=False))
        for n in range(4):
            reputation.record_arbitration(BUYER, True, related_id=100 + n)
        d = mgr.create(1, BUYER, SELLER, make_evidence())
        mgr.assign_jurors(d.dispute_id, [{"address": JUROR_1, "stake": 1}])
        mgr.cast_vote(d.dispute_id, JUROR_1, "Buyer")
        buyer = reputation.require(BUYER)
        assert buyer.arb_participated == 5
        assert buyer.badges == []

    def test_hook_failure_does_not_undo_resolution(self, db, caplog):
        class BrokenLedger(ReputationManager):
            def record_arbitration(self, user, won, related_id=None):
                raise NotFoundError("ledger offline")

        mgr = DisputeManager(db, BrokenLedger(db))
        d = mgr.create(1, BUYER, SELLER, make_evidence())
        mgr.assign_jurors(d.dispute_id, [{"address": JUROR_1, "stake": 1}])
        d = mgr.cast_vote(d.dispute_id, JUROR_1, "Seller")
        assert d.status == DisputeStatus.RESOLVED
        assert mgr.require(d.dispute_id).status == DisputeStatus.RESOLVED
        assert "Reputation update failed" in caplog.text


class TestConcurrentVotes:
    def test_simultaneous_votes_resolve_once(self, disputes, reputation):
        n = 12
        d = disputes.create(1, BUYER, SELLER, make_evidence())
        disputes.assign_jurors(d.dispute_id, [{"address": f"0xj{i}", "stake": 10} for i in range(n)])

        barrier = threading.Barrier(n)
        errors = []

        def vote(i):
            barrier.wait()
            try:
                disputes.cast_vote(d.dispute_id, f"0xj{i}", "Buyer" if i % 3 else "Seller")
            except Exception as e:  # collected and asserted below
                errors.append(e)

        threads = [threading.Thread(target=vote, args=(i,)) for i in range(n)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=10)

        assert errors == []
        final = disputes.require(d.dispute_id)
        assert final.status == DisputeStatus.RESOLVED
        assert final.buyer_votes + final.seller_votes == n
        assert (final.buyer_votes, final.seller_votes) == (8, 4)
        assert sum(1 for e in final.timeline if e["action"] == "Dispute Resolved") == 1
        assert reputation.require(BUYER).arb_participated == 1
        assert reputation.require(SELLER).arb_participated == 1

    def test_concurrent_double_vote_counted_once(self, disputes):
        d = disputes.create(1, BUYER, SELLER, make_evidence())
        disputes.assign_jurors(d.dispute_id, two_jurors())
        barrier = threading.Barrier(4)
        outcomes = []

        def vote():
            barrier.wait()
            try:
                disputes.cast_vote(d.dispute_id, JUROR_1, "Buyer")
                outcomes.append("ok")
            except ConflictError:
                outcomes.append("conflict")

        threads = [threading.Thread(target=vote) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=10)

        assert sorted(outcomes) == ["conflict", "conflict", "conflict", "ok"]
        assert disputes.require(d.dispute_id).buyer_votes == 1


class TestQueries:
    def test_list_by_participant(self, disputes):
        a = disputes.create(1, BUYER, SELLER, make_evidence())
        disputes.create(2, "0xccc", "0xddd", make_evidence())
        disputes.assign_jurors(a.dispute_id, two_jurors())

        items, total = disputes.list(participant=JUROR_2)
        assert total == 1
        assert items[0].dispute_id == a.dispute_id
        items, total = disputes.list(participant="0xDDD")
        assert total == 1
        items, total = disputes.list()
        assert [d.dispute_id for d in items] == [2, 1]

    def test_list_by_status(self, disputes):
        a = disputes.create(1, BUYER, SELLER, make_evidence())
        disputes.create(2, BUYER, SELLER, make_evidence())
        disputes.assign_jurors(a.dispute_id, two_jurors())
        items, total = disputes.list(status="InProgress")
        assert total == 1 and items[0].dispute_id == a.dispute_id
        with pytest.raises(ValidationError):
            disputes.list(status="Sleeping")

    def test_stats(self, disputes):
        a = disputes.create(1, BUYER, SELLER, make_evidence())
        b = disputes.create(2, BUYER, SELLER, make_evidence())
        disputes.create(3, BUYER, SELLER, make_evidence())
        disputes.assign_jurors(a.dispute_id, [{"address": JUROR_1, "stake": 1}])
        disputes.cast_vote(a.dispute_id, JUROR_1, "Buyer")
        disputes.cancel(b.dispute_id, "0xadmin", "withdrawn")
        stats = disputes.get_stats()
        assert stats["total"] == 3
        assert stats["active"] == 1
        assert stats["resolved"] == 1
        assert stats["by_status"]["Cancelled"] == 1

    def test_cancel(self, disputes, reputation):
        d = disputes.create(1, BUYER, SELLER, make_evidence())
        d = disputes.cancel(d.dispute_id, "0xadmin")
        assert d.status == DisputeStatus.CANCELLED
        assert d.timeline[-1]["action"] == "Dispute Cancelled"
        assert reputation.get(BUYER) is None
        with pytest.raises(InvalidStateError):
            disputes.cancel(d.dispute_id, "0xadmin")
