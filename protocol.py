"""Shared constants and enums for the escrow marketplace.

All modules import from here to avoid circular dependencies.
"""

from decimal import Decimal
from enum import Enum

# --- Marketplace Constants ---

API_VERSION = "1.0"

DEFAULT_PAGE_LIMIT = 20
MAX_PAGE_LIMIT = 500
DEFAULT_LEADERBOARD_LIMIT = 10
DEFAULT_ACTIVITY_LIMIT = 50

# Juror registry
MIN_JUROR_STAKE = Decimal("1000")
DEFAULT_JUROR_REPUTATION = 100

# Money: uint256-sized integers with up to 18 decimal places, summed exactly
MAX_AMOUNT_DIGITS = 78
MAX_AMOUNT_SCALE = 18
MONEY_PRECISION = 120

# Reputation scoring (signed change recorded in history)
TX_SUCCESS_POINTS = 10
TX_FAILURE_POINTS = -5
ARBITRATION_WIN_POINTS = 25
ARBITRATION_LOSS_POINTS = -10
MAX_HISTORY_ENTRIES = 100

# Tier bands, highest first: (minimum score, tier name)
TIER_BANDS = [
    (2000, "Legend"),
    (1000, "Master"),
    (500, "Expert"),
    (100, "Trusted"),
    (0, "Newcomer"),
]
TIERS = [name for _, name in TIER_BANDS]

# Score distribution buckets for stats: [low, high) with None = unbounded
SCORE_BUCKETS = [(0, 100), (100, 500), (500, 1000), (1000, 2000), (2000, None)]

BADGE_CATEGORIES = {"Transaction", "Arbitration", "Community", "Special"}

RESOLUTION_REASON = "All jurors voted"
SYSTEM_ACTOR = "system"
ANONYMOUS_ACTOR = "anonymous"


# --- State Machines ---

class EscrowStatus(str, Enum):
    ACTIVE = "Active"
    COMPLETED = "Completed"
    DISPUTED = "Disputed"
    CANCELLED = "Cancelled"


class DisputeStatus(str, Enum):
    PENDING = "Pending"
    IN_PROGRESS = "InProgress"
    RESOLVED = "Resolved"
    CANCELLED = "Cancelled"


# Valid state transitions: current_state -> set of valid next states
ESCROW_TRANSITIONS = {
    EscrowStatus.ACTIVE: {EscrowStatus.COMPLETED, EscrowStatus.DISPUTED, EscrowStatus.CANCELLED},
    EscrowStatus.COMPLETED: set(),
    EscrowStatus.DISPUTED: set(),
    EscrowStatus.CANCELLED: set(),
}

DISPUTE_TRANSITIONS = {
    DisputeStatus.PENDING: {DisputeStatus.IN_PROGRESS, DisputeStatus.CANCELLED},
    DisputeStatus.IN_PROGRESS: {DisputeStatus.RESOLVED, DisputeStatus.CANCELLED},
    DisputeStatus.RESOLVED: set(),
    DisputeStatus.CANCELLED: set(),
}

# Evidence may only change while the case is open
DISPUTE_OPEN_STATES = {DisputeStatus.PENDING, DisputeStatus.IN_PROGRESS}


# --- Votes ---

class Vote(str, Enum):
    NONE = "None"
    BUYER = "Buyer"
    SELLER = "Seller"


class TieBreak(str, Enum):
    """Which party wins when buyer and seller votes are equal."""
    SELLER = "seller"
    BUYER = "buyer"


# --- Timeline Actions ---

class EscrowAction(str, Enum):
    CREATED = "Escrow Created"
    CONFIRMED = "Completion Confirmed"
    COMPLETED = "Escrow Completed"
    DISPUTED = "Dispute Created"
    CANCELLED = "Escrow Cancelled"


class DisputeAction(str, Enum):
    CREATED = "Dispute Created"
    EVIDENCE_ADDED = "Evidence Added"
    JURORS_ASSIGNED = "Jurors Assigned"
    VOTE_CAST = "Vote Cast"
    RESOLVED = "Dispute Resolved"
    CANCELLED = "Dispute Cancelled"


# --- Reputation History Actions ---

class HistoryAction(str, Enum):
    TX_SUCCESS = "Successful Transaction"
    TX_FAILED = "Failed Transaction"
    ARBITRATION_WON = "Won Arbitration"
    ARBITRATION_LOST = "Lost Arbitration"

