import sys
import os

# Ensure the repo root is on the path for all tests
sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

import pytest

from server.config import Settings
from server.disputes import DisputeManager
from server.escrow import EscrowManager
from server.jurors import JurorRegistry
from server.reputation import ReputationManager
from server.store import Database


BUYER = "0xaaa"
SELLER = "0xbbb"
JUROR_1 = "0xj1"
JUROR_2 = "0xj2"
JUROR_3 = "0xj3"


@pytest.fixture
def settings():
    return Settings()


@pytest.fixture
def db():
    database = Database(":memory:")
    yield database
    database.close()


@pytest.fixture
def reputation(db):
    return ReputationManager(db)


@pytest.fixture
def jurors(db, settings):
    return JurorRegistry(db, settings)


@pytest.fixture
def disputes(db, reputation, jurors, settings):
    return DisputeManager(db, reputation=reputation, jurors=jurors, settings=settings)


@pytest.fixture
def escrows(db, reputation, disputes, settings):
    return EscrowManager(db, reputation=reputation, disputes=disputes, settings=settings)


def make_evidence(**overrides):
    defaults = dict(hash="QmEvidence", description="Item never arrived", files=[])
    defaults.update(overrides)
    return defaults


def two_jurors(stake="500"):
    return [{"address": JUROR_1, "stake": stake}, {"address": JUROR_2, "stake": stake}]
