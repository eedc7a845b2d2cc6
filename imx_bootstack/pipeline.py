"""Target dispatch.

This module provides the top-level pipeline API:
- parse_target(): Map a target string to a TargetRequest
- validate_request(): Invocation checks that run before any side effect
- plan_steps(): The ordered step list of a target
- run_pipeline(): Run the steps fail-fast, recording each one

Every step is a plain callable taking the Settings. A step record is
committed before the step starts, so an interrupted run leaves a 'running'
record behind in the history.
"""

from __future__ import annotations

import logging
import shutil
import uuid
from collections.abc import Callable, Generator
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path

from sqlalchemy.orm import Session, sessionmaker

from imx_bootstack.builds.fingerprint import compute_fingerprint, create_step_inputs
from imx_bootstack.builds.history import (
    find_completed_stage,
    forget_stages,
    start_stage_record,
)
from imx_bootstack.builds.models import StageRecord
from imx_bootstack.builds.stages import (
    build_atf,
    build_boot_image,
    build_device_trees,
    build_kernel,
    build_uboot,
)
from imx_bootstack.builds.staging import stage_boot_inputs, stage_kernel_artifacts
from imx_bootstack.config import Settings
from imx_bootstack.db import get_session
from imx_bootstack.dependencies import ensure_dependencies, required_tools
from imx_bootstack.errors import BootstackError, ConfigurationError, OperationCancelled
from imx_bootstack.flash.service import FlashDeviceRequiredError, flash_device
from imx_bootstack.sources.firmware import prepare_ddr_firmware
from imx_bootstack.sources.git import apply_patches, current_revision, sync_repository
from imx_bootstack.types import BuildTarget, CleanTarget, ConfirmCallback

logger = logging.getLogger(__name__)

USAGE = (
    "Targets: kernel, dts, uboot, atf, image, build, all, flash, "
    "clean:<kernel|uboot|atf|image|all>"
)


class UnknownTargetError(ConfigurationError):
    """The requested target or clean sub-target does not exist."""

    def __init__(self, target: str) -> None:
        super().__init__(
            f"Unknown build target: {target!r}. {USAGE}",
            error_code="UNKNOWN_TARGET",
        )
        self.target = target


@dataclass(frozen=True)
class TargetRequest:
    """A parsed target, with its sub-target for ``clean``."""

    target: BuildTarget
    clean: CleanTarget | None = None

    def __str__(self) -> str:
        if self.clean is not None:
            return f"{self.target.value}:{self.clean.value}"
        return self.target.value


@dataclass(frozen=True)
class Step:
    """One unit of pipeline work.

    Attributes:
        name: Step name, also the key of its history records.
        action: Callable doing the work.
        resumable: Whether a resumed run may skip it.
        trees: Names of the Settings paths whose git revision feeds the
            step's fingerprint.
    """

    name: str
    action: Callable[[Settings], object]
    resumable: bool = True
    trees: tuple[str, ...] = ()


@dataclass
class PipelineResult:
    """Outcome of a pipeline run.

    Attributes:
        run_id: Identifier shared by the run's history records.
        target: Target that ran.
        executed: Steps that ran, in order.
        skipped: Steps a resumed run skipped.
    """

    run_id: str
    target: str
    executed: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)


def parse_target(raw: str) -> TargetRequest:
    """Parse a target string such as ``dts`` or ``clean:uboot``.

    A bare ``clean`` means ``clean:all``.

    Raises:
        UnknownTargetError: The target or its sub-target is not known.
    """
    name, sep, sub = raw.strip().partition(":")
    try:
        target = BuildTarget(name)
    except ValueError:
        raise UnknownTargetError(raw) from None

    if target is BuildTarget.CLEAN:
        try:
            return TargetRequest(target, CleanTarget(sub if sep else "all"))
        except ValueError:
            raise UnknownTargetError(raw) from None
    if sep:
        raise UnknownTargetError(raw)
    return TargetRequest(target)


def validate_request(settings: Settings, request: TargetRequest) -> None:
    """Check the invocation before anything touches the filesystem.

    Raises:
        ConfigurationError: No working directory was configured.
        FlashDeviceRequiredError: ``flash`` without a device.
    """
    logger.debug("Working directory: %s", settings.root)
    if request.target is BuildTarget.FLASH and not settings.flash_device:
        raise FlashDeviceRequiredError()


# Step actions


def _sync_step(name: str, repo: str, branch: str, tree: str) -> Step:
    def action(settings: Settings) -> object:
        return sync_repository(
            getattr(settings, repo), getattr(settings, branch), getattr(settings, tree)
        )

    return Step(f"sync-{name}", action, resumable=False)


def _prepare_ddr_firmware(settings: Settings) -> object:
    return prepare_ddr_firmware(settings.ddr_firmware_url, settings.tools_dir)


def _patch_mkimage(settings: Settings) -> object:
    patches = [settings.bsp_dir / patch for patch in settings.mkimage_patch_list]
    return apply_patches(settings.mkimage_dir, patches)


SYNC_KERNEL = _sync_step("kernel", "kernel_repo", "kernel_branch", "kernel_dir")
SYNC_UBOOT = _sync_step("uboot", "uboot_repo", "uboot_branch", "uboot_dir")
SYNC_ATF = _sync_step("atf", "atf_repo", "atf_branch", "atf_dir")
SYNC_MKIMAGE = _sync_step("mkimage", "mkimage_repo", "mkimage_branch", "mkimage_dir")
SYNC_BSP = _sync_step("bsp", "bsp_repo", "bsp_branch", "bsp_dir")

KERNEL = Step("kernel", build_kernel, trees=("kernel_dir",))
DTS = Step("dts", build_device_trees, trees=("kernel_dir",))
KERNEL_ARTIFACTS = Step("kernel-artifacts", stage_kernel_artifacts, resumable=False)
UBOOT = Step("uboot", build_uboot, trees=("uboot_dir",))
ATF = Step("atf", build_atf, trees=("atf_dir",))
DDR_FIRMWARE = Step("ddr-firmware", _prepare_ddr_firmware)
PATCH_MKIMAGE = Step("patch-mkimage", _patch_mkimage, resumable=False)
BOOT_INPUTS = Step("boot-inputs", stage_boot_inputs, resumable=False)
IMAGE = Step(
    "image", build_boot_image, trees=("mkimage_dir", "uboot_dir", "atf_dir")
)


def _image_steps(settings: Settings) -> list[Step]:
    steps = [DDR_FIRMWARE, SYNC_MKIMAGE]
    if settings.mkimage_patch_list:
        steps += [SYNC_BSP, PATCH_MKIMAGE]
    return [*steps, BOOT_INPUTS, IMAGE]


def plan_steps(settings: Settings, request: TargetRequest) -> list[Step]:
    """Return the ordered steps of a build target.

    ``flash`` and ``clean`` are not step based and return an empty list.
    """
    target = request.target
    if target is BuildTarget.KERNEL:
        return [SYNC_KERNEL, KERNEL]
    if target is BuildTarget.DTS:
        return [SYNC_KERNEL, DTS]
    if target is BuildTarget.UBOOT:
        return [SYNC_UBOOT, UBOOT]
    if target is BuildTarget.ATF:
        return [SYNC_ATF, ATF]
    if target is BuildTarget.IMAGE:
        return _image_steps(settings)
    if target in (BuildTarget.BUILD, BuildTarget.ALL):
        return [
            SYNC_KERNEL,
            KERNEL,
            DTS,
            KERNEL_ARTIFACTS,
            SYNC_UBOOT,
            UBOOT,
            SYNC_ATF,
            ATF,
            *_image_steps(settings),
        ]
    return []


# Clean


# Steps whose history records are forgotten with each clean sub-target
CLEAN_STEPS: dict[CleanTarget, tuple[str, ...]] = {
    CleanTarget.KERNEL: ("kernel", "dts", "kernel-artifacts"),
    CleanTarget.UBOOT: ("uboot", "boot-inputs", "image"),
    CleanTarget.ATF: ("atf", "image"),
    CleanTarget.IMAGE: ("ddr-firmware", "patch-mkimage", "image"),
}
CLEAN_STEPS[CleanTarget.ALL] = tuple(
    dict.fromkeys(step for steps in CLEAN_STEPS.values() for step in steps)
)


def clean_paths(settings: Settings, sub: CleanTarget) -> list[Path]:
    """Return the directories and files removed by ``clean:<sub>``."""
    paths = {
        CleanTarget.KERNEL: [
            settings.kernel_dir,
            settings.kernel_output_dir,
            settings.modules_staging_dir,
        ],
        CleanTarget.UBOOT: [settings.uboot_dir],
        CleanTarget.ATF: [settings.atf_dir],
        CleanTarget.IMAGE: [settings.mkimage_dir, settings.boot_image_path],
    }
    if sub is CleanTarget.ALL:
        return [
            *paths[CleanTarget.KERNEL],
            settings.uboot_dir,
            settings.tools_dir,
        ]
    return paths[sub]


def clean(
    settings: Settings,
    sub: CleanTarget,
    *,
    session_factory: sessionmaker[Session] | None = None,
) -> list[Path]:
    """Remove the outputs of ``sub`` and forget the matching step records.

    Returns:
        The paths that were removed (or would be, on a dry run).
    """
    removed = []
    for path in clean_paths(settings, sub):
        if not path.exists() and not path.is_symlink():
            continue
        removed.append(path)
        if settings.dry_run:
            logger.info("Dry run: would remove %s", path)
            continue
        logger.info("Removing %s", path)
        if path.is_dir() and not path.is_symlink():
            shutil.rmtree(path)
        else:
            path.unlink()

    if session_factory is not None and not settings.dry_run:
        with get_session(session_factory) as session:
            count = forget_stages(
                session, workdir=str(settings.root), steps=list(CLEAN_STEPS[sub])
            )
        logger.debug("Forgot %d stage record(s)", count)

    if not removed:
        logger.info("Nothing to clean for %s", sub.value)
    return removed


# Execution


def step_fingerprint(settings: Settings, step: Step) -> str:
    """Fingerprint the configuration and source revisions ``step`` reads."""
    revisions = {tree: current_revision(getattr(settings, tree)) for tree in step.trees}
    return compute_fingerprint(create_step_inputs(step.name, settings, revisions))


@contextmanager
def _stage_record(
    session_factory: sessionmaker[Session] | None,
    *,
    run_id: str,
    target: str,
    step: str,
    workdir: str,
    fingerprint: str | None,
) -> Generator[StageRecord | None, None, None]:
    """Track one step as a StageRecord when history is enabled."""
    if session_factory is None:
        yield None
        return

    with get_session(session_factory) as session:
        record = start_stage_record(
            session,
            run_id=run_id,
            target=target,
            step=step,
            workdir=workdir,
            fingerprint=fingerprint,
        )
        session.commit()
        try:
            yield record
        except (OperationCancelled, KeyboardInterrupt):
            record.mark_cancelled()
            session.commit()
            raise
        except BootstackError as e:
            record.mark_failed(e.error_code, e.message)
            session.commit()
            raise
        except Exception as e:
            record.mark_failed(type(e).__name__, str(e))
            session.commit()
            raise
        record.mark_succeeded()


def _already_done(
    session_factory: sessionmaker[Session] | None,
    *,
    workdir: str,
    step: str,
    fingerprint: str,
) -> bool:
    if session_factory is None:
        return False
    with get_session(session_factory) as session:
        return (
            find_completed_stage(
                session, workdir=workdir, step=step, fingerprint=fingerprint
            )
            is not None
        )


def _record_skip(
    session_factory: sessionmaker[Session],
    *,
    run_id: str,
    target: str,
    step: str,
    workdir: str,
    fingerprint: str,
) -> None:
    with get_session(session_factory) as session:
        record = start_stage_record(
            session,
            run_id=run_id,
            target=target,
            step=step,
            workdir=workdir,
            fingerprint=fingerprint,
        )
        record.mark_skipped()


def run_steps(
    settings: Settings,
    steps: list[Step],
    result: PipelineResult,
    *,
    resume: bool = False,
    session_factory: sessionmaker[Session] | None = None,
) -> None:
    """Run ``steps`` in order, stopping at the first failure.

    With ``resume``, a step whose fingerprint matches its last success is
    skipped, but only until a resumable step of this run has been rebuilt:
    later steps may consume its new outputs, so they all run again.
    """
    workdir = str(settings.root)
    rebuilt = False
    for index, step in enumerate(steps, start=1):
        fingerprint = step_fingerprint(settings, step) if step.resumable else None

        if (
            resume
            and not rebuilt
            and fingerprint is not None
            and session_factory is not None
            and _already_done(
                session_factory, workdir=workdir, step=step.name, fingerprint=fingerprint
            )
        ):
            logger.info(
                "[%d/%d] %s: unchanged since last success, skipping",
                index,
                len(steps),
                step.name,
            )
            _record_skip(
                session_factory,
                run_id=result.run_id,
                target=result.target,
                step=step.name,
                workdir=workdir,
                fingerprint=fingerprint,
            )
            result.skipped.append(step.name)
            continue

        logger.info("[%d/%d] %s", index, len(steps), step.name)
        with _stage_record(
            session_factory,
            run_id=result.run_id,
            target=result.target,
            step=step.name,
            workdir=workdir,
            fingerprint=fingerprint,
        ):
            step.action(settings)
        result.executed.append(step.name)
        if step.resumable:
            rebuilt = True


def run_pipeline(
    settings: Settings,
    request: TargetRequest,
    *,
    confirm: ConfirmCallback | None = None,
    resume: bool = False,
    session_factory: sessionmaker[Session] | None = None,
) -> PipelineResult:
    """Run a target end to end.

    Args:
        settings: Build configuration.
        request: Parsed target.
        confirm: Callback for destructive or installing operations.
        resume: Skip steps whose inputs are unchanged since their last success.
        session_factory: Run history database; None disables history.

    Returns:
        PipelineResult listing executed and skipped steps.

    Raises:
        BootstackError: The first failure of any step.
    """
    validate_request(settings, request)
    result = PipelineResult(run_id=str(uuid.uuid4()), target=str(request))
    logger.info("Run %s: target %s in %s", result.run_id, result.target, settings.root)

    if request.target is BuildTarget.CLEAN:
        assert request.clean is not None
        removed = clean(settings, request.clean, session_factory=session_factory)
        result.executed.extend(str(path) for path in removed)
        return result

    ensure_dependencies(
        required_tools(settings, request.target),
        confirm=confirm,
        assume_yes=settings.assume_yes,
    )

    run_steps(
        settings,
        plan_steps(settings, request),
        result,
        resume=resume,
        session_factory=session_factory,
    )

    flashing = request.target is BuildTarget.FLASH or (
        request.target in (BuildTarget.BUILD, BuildTarget.ALL)
        and settings.flash_device
    )
    if flashing:
        logger.info("Flashing %s", settings.flash_device)
        flash_device(
            settings,
            run_id=result.run_id,
            confirm=confirm,
            session_factory=session_factory,
        )
        result.executed.append("flash")
    elif request.target in (BuildTarget.BUILD, BuildTarget.ALL):
        logger.info("No flash device given, skipping flashing")

    logger.info("Run %s finished: target %s", result.run_id, result.target)
    return result


__all__ = [
    "CLEAN_STEPS",
    "USAGE",
    "PipelineResult",
    "Step",
    "TargetRequest",
    "UnknownTargetError",
    "clean",
    "clean_paths",
    "parse_target",
    "plan_steps",
    "run_pipeline",
    "run_steps",
    "step_fingerprint",
    "validate_request",
]
