"""Checkpoint store.

This module handles:
- Recording stage completion for a configuration fingerprint
- Answering whether a stage is complete for a fingerprint
- Invalidating every checkpoint of a fingerprint (forced clean restart)

Each call runs in its own committed transaction, so a checkpoint becomes
visible only once the producing stage has fully completed. An empty or
brand-new store reports no stage as complete.
"""

from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy import delete, select
from sqlalchemy.orm import Session, sessionmaker

from onefile_imagegen.db import (
    create_all_tables,
    get_engine,
    get_session_factory,
    session_scope,
)
from onefile_imagegen.pipeline.models import Checkpoint

logger = logging.getLogger(__name__)


class CheckpointStore:
    """Append-only checkpoint log keyed by fingerprint."""

    def __init__(self, session_factory: sessionmaker[Session]) -> None:
        self._session_factory = session_factory

    @classmethod
    def open(cls, db_url: str) -> CheckpointStore:
        """Open (creating if needed) the store at a database URL."""
        engine = get_engine(db_url)
        create_all_tables(engine)
        return cls(get_session_factory(engine))

    def record(self, stage: str, fingerprint: str) -> None:
        """Append a checkpoint for a completed stage."""
        with session_scope(self._session_factory) as session:
            session.add(
                Checkpoint(
                    stage_name=stage,
                    fingerprint=fingerprint,
                    completed_at=datetime.now(),
                )
            )
        logger.debug("Checkpoint recorded: %s @ %s", stage, fingerprint[:19])

    def has(self, stage: str, fingerprint: str) -> bool:
        """Check whether a stage completed under a fingerprint."""
        with session_scope(self._session_factory) as session:
            stmt = (
                select(Checkpoint.id)
                .where(Checkpoint.fingerprint == fingerprint)
                .where(Checkpoint.stage_name == stage)
                .limit(1)
            )
            return session.execute(stmt).first() is not None

    def completed_stages(self, fingerprint: str) -> dict[str, datetime]:
        """Map each completed stage to its latest completion time."""
        with session_scope(self._session_factory) as session:
            stmt = (
                select(Checkpoint)
                .where(Checkpoint.fingerprint == fingerprint)
                .order_by(Checkpoint.completed_at, Checkpoint.id)
            )
            return {c.stage_name: c.completed_at for c in session.scalars(stmt)}

    def invalidate(self, fingerprint: str) -> int:
        """Delete every checkpoint of a fingerprint.

        Returns:
            Number of checkpoints removed.
        """
        with session_scope(self._session_factory) as session:
            result = session.execute(
                delete(Checkpoint).where(Checkpoint.fingerprint == fingerprint)
            )
            removed = result.rowcount or 0
        logger.info("Invalidated %d checkpoint(s) for %s", removed, fingerprint[:19])
        return removed


__all__ = ["CheckpointStore"]
