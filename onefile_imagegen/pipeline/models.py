"""Checkpoint ORM model.

A checkpoint row records that one stage completed for one configuration
fingerprint. Rows are only ever appended, or deleted by invalidation of a
whole fingerprint.
"""

from datetime import datetime

from sqlalchemy import DateTime, Index, Integer, String, func
from sqlalchemy.orm import Mapped, mapped_column

from onefile_imagegen.db import Base


class Checkpoint(Base):
    """ORM model for completed-stage checkpoints.

    Attributes:
        id: Primary key.
        stage_name: Name of the completed stage.
        fingerprint: Configuration fingerprint the stage ran under.
        completed_at: Completion timestamp.
    """

    __tablename__ = "checkpoints"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    stage_name: Mapped[str] = mapped_column(String(50), nullable=False)
    fingerprint: Mapped[str] = mapped_column(String(80), nullable=False, index=True)
    completed_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, server_default=func.now()
    )

    __table_args__ = (
        Index("ix_checkpoints_fingerprint_stage", "fingerprint", "stage_name"),
    )

    def __repr__(self) -> str:
        """Return string representation of Checkpoint."""
        return (
            f"<Checkpoint(stage='{self.stage_name}', "
            f"fingerprint='{self.fingerprint[:19]}...')>"
        )


__all__ = ["Checkpoint"]
