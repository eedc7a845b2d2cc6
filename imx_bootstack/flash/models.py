"""Flash ORM models.

This module defines the FlashRecord model for tracking writes of build
outputs to removable storage.
"""

from datetime import datetime

from sqlalchemy import Boolean, DateTime, Index, Integer, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from imx_bootstack.db import Base
from imx_bootstack.types import FlashStatus


class FlashRecord(Base):
    """ORM model for flash operations.

    Attributes:
        id: Primary key.
        run_id: Pipeline run the flash belonged to.
        kind: What was written (boot-image or kernel).
        source_path: Boot image or kernel output directory.
        device_path: Block device path (e.g., '/dev/sdb').
        device_type: Reported bus type (SD card, USB drive, unknown).
        dry_run: Whether the operation only described the write.
        requested_at: Timestamp when flash was requested.
        started_at: Timestamp when flash started.
        finished_at: Timestamp when flash finished.
        status: Flash status.
        error_type: Error code if the flash failed.
        error_message: Error message if the flash failed.
    """

    __tablename__ = "flash_records"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    run_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    kind: Mapped[str] = mapped_column(String(20), nullable=False)
    source_path: Mapped[str] = mapped_column(String(1024), nullable=False)

    device_path: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    device_type: Mapped[str | None] = mapped_column(String(50), nullable=True)
    dry_run: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    requested_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, server_default=func.now()
    )
    started_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    finished_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=FlashStatus.PENDING.value, index=True
    )

    error_type: Mapped[str | None] = mapped_column(String(100), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    __table_args__ = (Index("ix_flash_records_device_status", "device_path", "status"),)

    def __repr__(self) -> str:
        """Return string representation of FlashRecord."""
        return (
            f"<FlashRecord(id={self.id}, kind='{self.kind}', "
            f"device_path='{self.device_path}', status='{self.status}')>"
        )

    def mark_running(self) -> None:
        """Mark this flash as running."""
        self.status = FlashStatus.RUNNING.value
        self.started_at = datetime.now()

    def mark_succeeded(self, *, dry_run: bool = False) -> None:
        """Mark this flash as finished; a dry run is recorded as such."""
        status = FlashStatus.DRY_RUN if dry_run else FlashStatus.SUCCEEDED
        self.status = status.value
        self.finished_at = datetime.now()

    def mark_cancelled(self) -> None:
        """Mark this flash as declined by the user."""
        self.status = FlashStatus.CANCELLED.value
        self.finished_at = datetime.now()

    def mark_failed(
        self, error_type: str | None = None, message: str | None = None
    ) -> None:
        """Mark this flash as failed.

        Args:
            error_type: Type/category of the error.
            message: Error message details.
        """
        self.status = FlashStatus.FAILED.value
        self.finished_at = datetime.now()
        if error_type:
            self.error_type = error_type
        if message:
            self.error_message = message


__all__ = ["FlashRecord"]
