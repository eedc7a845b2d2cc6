"""Stage record queries and bookkeeping."""

from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from imx_bootstack.builds.models import StageRecord
from imx_bootstack.types import StepStatus


def start_stage_record(
    session: Session,
    *,
    run_id: str,
    target: str,
    step: str,
    workdir: str,
    fingerprint: str | None,
) -> StageRecord:
    """Create a running StageRecord and flush it to obtain an id."""
    record = StageRecord(
        run_id=run_id,
        target=target,
        step=step,
        workdir=workdir,
        fingerprint=fingerprint,
    )
    record.mark_running()
    session.add(record)
    session.flush()
    return record


def find_completed_stage(
    session: Session,
    *,
    workdir: str,
    step: str,
    fingerprint: str,
) -> StageRecord | None:
    """Return the latest record of ``step`` in ``workdir``, if it succeeded
    with the given fingerprint.

    Only the most recent run of the step counts: unless it finished
    successfully, the step's outputs can no longer be trusted. Skip records
    are not runs.
    """
    stmt = (
        select(StageRecord)
        .where(StageRecord.workdir == workdir)
        .where(StageRecord.step == step)
        .where(StageRecord.status != StepStatus.SKIPPED.value)
        .order_by(StageRecord.requested_at.desc(), StageRecord.id.desc())
        .limit(1)
    )
    latest = session.execute(stmt).scalar_one_or_none()
    if latest is None or not latest.is_succeeded():
        return None
    if latest.fingerprint != fingerprint:
        return None
    return latest


def get_stage_records(
    session: Session,
    *,
    workdir: str | None = None,
    run_id: str | None = None,
    status: StepStatus | None = None,
    limit: int = 100,
) -> list[StageRecord]:
    """Query stage records with optional filters, newest first.

    Args:
        session: Database session.
        workdir: Filter by working directory.
        run_id: Filter by run.
        status: Filter by status.
        limit: Maximum number of records to return.

    Returns:
        List of StageRecord objects.
    """
    stmt = select(StageRecord)
    if workdir is not None:
        stmt = stmt.where(StageRecord.workdir == workdir)
    if run_id is not None:
        stmt = stmt.where(StageRecord.run_id == run_id)
    if status is not None:
        stmt = stmt.where(StageRecord.status == status.value)

    stmt = stmt.order_by(StageRecord.requested_at.desc(), StageRecord.id.desc())
    return list(session.execute(stmt.limit(limit)).scalars().all())


def forget_stages(session: Session, *, workdir: str, steps: list[str]) -> int:
    """Delete the records of ``steps`` so a resumed run redoes them.

    Returns:
        Number of deleted records.
    """
    if not steps:
        return 0
    result = session.execute(
        delete(StageRecord)
        .where(StageRecord.workdir == workdir)
        .where(StageRecord.step.in_(steps))
    )
    return result.rowcount or 0


__all__ = [
    "find_completed_stage",
    "forget_stages",
    "get_stage_records",
    "start_stage_record",
]
