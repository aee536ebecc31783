#!/usr/bin/env python3
"""Escrow marketplace server.

Configuration comes from MARKET_* environment variables (see server/config.py).
"""

import logging
import os
import sys

import uvicorn

from server.app import create_app
from server.config import Settings
from server.disputes import DisputeManager
from server.escrow import EscrowManager
from server.jurors import JurorRegistry
from server.reputation import ReputationManager
from server.store import Database

logger = logging.getLogger("run_server")


def build_app(settings: Settings):
    """Open the database and wire every manager onto it."""
    if settings.db_path != ":memory:":
        parent = os.path.dirname(settings.db_path)
        if parent:
            os.makedirs(parent, exist_ok=True)
    db = Database(settings.db_path)
    reputation_mgr = ReputationManager(db)
    juror_registry = JurorRegistry(db, settings)
    dispute_mgr = DisputeManager(db, reputation=reputation_mgr, jurors=juror_registry, settings=settings)
    escrow_mgr = EscrowManager(db, reputation=reputation_mgr, disputes=dispute_mgr, settings=settings)
    return create_app(
        settings=settings, database=db, reputation_mgr=reputation_mgr,
        juror_registry=juror_registry, dispute_mgr=dispute_mgr, escrow_mgr=escrow_mgr,
    )


def main():
    try:
        settings = Settings.from_env()
    except ValueError as e:
        print(f"Invalid configuration: {e}", file=sys.stderr)
        sys.exit(1)

    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    app = build_app(settings)
    logger.info("Database: %s", settings.db_path)
    logger.info("Tie-break: %s, auto badges: %s", settings.tie_break.value, settings.auto_award_badges)
    logger.info("Listening on %s:%d", settings.host, settings.port)
    uvicorn.run(app, host=settings.host, port=settings.port, log_level=settings.log_level.lower())


if __name__ == "__main__":
    main()
