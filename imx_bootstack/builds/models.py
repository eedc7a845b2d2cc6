"""Build history ORM models.

This module defines the StageRecord model, one row per pipeline step
execution. Records form an audit trail of runs and let a resumed run skip
steps that already succeeded with identical inputs.
"""

from datetime import datetime

from sqlalchemy import DateTime, Index, Integer, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from imx_bootstack.db import Base
from imx_bootstack.types import StepStatus


class StageRecord(Base):
    """ORM model for a single pipeline step execution.

    Attributes:
        id: Primary key.
        run_id: Identifier shared by every step of one invocation.
        target: Pipeline target the step ran under (e.g. 'all').
        step: Step name (e.g. 'kernel', 'sync-uboot').
        workdir: Working directory the step operated on.
        fingerprint: Hash of the step's inputs.
        status: Step status (pending, running, succeeded, failed, ...).
        requested_at: Timestamp when the record was created.
        started_at: Timestamp when the step started.
        finished_at: Timestamp when the step finished.
        error_code: Error code if the step failed.
        error_message: Error message if the step failed.
    """

    __tablename__ = "stage_records"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    run_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    target: Mapped[str] = mapped_column(String(32), nullable=False)
    step: Mapped[str] = mapped_column(String(64), nullable=False)
    workdir: Mapped[str] = mapped_column(String(1024), nullable=False)
    fingerprint: Mapped[str | None] = mapped_column(String(64), nullable=True)

    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=StepStatus.PENDING.value, index=True
    )

    requested_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, server_default=func.now()
    )
    started_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    finished_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    error_code: Mapped[str | None] = mapped_column(String(100), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    __table_args__ = (
        Index("ix_stage_records_workdir_step_status", "workdir", "step", "status"),
    )

    def __repr__(self) -> str:
        """Return string representation of StageRecord."""
        return (
            f"<StageRecord(id={self.id}, run_id='{self.run_id}', "
            f"step='{self.step}', status='{self.status}')>"
        )

    def mark_running(self) -> None:
        """Mark this step as running."""
        self.status = StepStatus.RUNNING.value
        self.started_at = datetime.now()

    def mark_succeeded(self) -> None:
        """Mark this step as succeeded."""
        self.status = StepStatus.SUCCEEDED.value
        self.finished_at = datetime.now()

    def mark_skipped(self) -> None:
        """Mark this step as skipped by a resumed run."""
        self.status = StepStatus.SKIPPED.value
        self.finished_at = datetime.now()

    def mark_cancelled(self) -> None:
        """Mark this step as cancelled by the user."""
        self.status = StepStatus.CANCELLED.value
        self.finished_at = datetime.now()

    def mark_failed(
        self, error_code: str | None = None, message: str | None = None
    ) -> None:
        """Mark this step as failed.

        Args:
            error_code: Code of the error.
            message: Error message details.
        """
        self.status = StepStatus.FAILED.value
        self.finished_at = datetime.now()
        if error_code:
            self.error_code = error_code
        if message:
            self.error_message = message

    def is_succeeded(self) -> bool:
        """Check if this step succeeded."""
        return self.status == StepStatus.SUCCEEDED.value


__all__ = ["StageRecord"]
