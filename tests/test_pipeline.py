"""Tests for pipeline.py - target parsing, planning and execution."""

from unittest.mock import MagicMock, patch

import pytest

from imx_bootstack.builds.history import get_stage_records
from imx_bootstack.config import Settings
from imx_bootstack.db import get_session
from imx_bootstack.errors import (
    ConfigurationError,
    MissingOutputError,
    OperationCancelled,
    ToolExecutionError,
)
from imx_bootstack.flash.service import FlashDeviceRequiredError
from imx_bootstack.pipeline import (
    PipelineResult,
    Step,
    TargetRequest,
    UnknownTargetError,
    clean,
    clean_paths,
    parse_target,
    plan_steps,
    run_pipeline,
    run_steps,
)
from imx_bootstack.types import BuildTarget, CleanTarget, CommandResult, StepStatus


def _ok(command, **kwargs):
    return CommandResult(command=" ".join(command), returncode=0)


def _names(steps):
    return [step.name for step in steps]


@pytest.fixture
def no_dependency_check():
    with patch("imx_bootstack.pipeline.ensure_dependencies") as mock_deps:
        yield mock_deps


class TestParseTarget:
    """Tests for parse_target."""

    def test_plain_targets(self):
        for name in ("kernel", "dts", "uboot", "atf", "image", "build", "all", "flash"):
            request = parse_target(name)
            assert request.target == BuildTarget(name)
            assert request.clean is None
            assert str(request) == name

    def test_clean_sub_target(self):
        request = parse_target("clean:uboot")
        assert request == TargetRequest(BuildTarget.CLEAN, CleanTarget.UBOOT)
        assert str(request) == "clean:uboot"

    def test_bare_clean_means_all(self):
        assert parse_target("clean").clean is CleanTarget.ALL

    def test_unknown_target(self):
        with pytest.raises(UnknownTargetError) as exc_info:
            parse_target("rootfs")
        assert exc_info.value.error_code == "UNKNOWN_TARGET"
        assert "clean:<kernel|uboot|atf|image|all>" in exc_info.value.message

    def test_unknown_clean_sub_target(self):
        with pytest.raises(UnknownTargetError):
            parse_target("clean:bsp")

    def test_sub_target_only_for_clean(self):
        with pytest.raises(UnknownTargetError):
            parse_target("kernel:all")


class TestPlanSteps:
    """Tests for plan_steps."""

    def test_single_component_targets(self, settings):
        assert _names(plan_steps(settings, parse_target("kernel"))) == [
            "sync-kernel",
            "kernel",
        ]
        assert _names(plan_steps(settings, parse_target("dts"))) == [
            "sync-kernel",
            "dts",
        ]
        assert _names(plan_steps(settings, parse_target("uboot"))) == [
            "sync-uboot",
            "uboot",
        ]
        assert _names(plan_steps(settings, parse_target("atf"))) == ["sync-atf", "atf"]

    def test_image_with_patches(self, settings):
        assert _names(plan_steps(settings, parse_target("image"))) == [
            "ddr-firmware",
            "sync-mkimage",
            "sync-bsp",
            "patch-mkimage",
            "boot-inputs",
            "image",
        ]

    def test_image_without_patches(self, settings):
        unpatched = settings.model_copy(update={"mkimage_patches": ""})
        assert "patch-mkimage" not in _names(
            plan_steps(unpatched, parse_target("image"))
        )

    def test_build_order(self, settings):
        names = _names(plan_steps(settings, parse_target("all")))
        assert names[:8] == [
            "sync-kernel",
            "kernel",
            "dts",
            "kernel-artifacts",
            "sync-uboot",
            "uboot",
            "sync-atf",
            "atf",
        ]
        assert names[-1] == "image"
        assert names == _names(plan_steps(settings, parse_target("build")))

    def test_flash_and_clean_have_no_steps(self, settings):
        assert plan_steps(settings, parse_target("flash")) == []
        assert plan_steps(settings, parse_target("clean:all")) == []


class TestRunSteps:
    """Tests for run_steps."""

    def _result(self):
        return PipelineResult(run_id="run-1", target="kernel")

    def test_fail_fast(self, settings, session_factory):
        first = MagicMock()
        failing = MagicMock(side_effect=ToolExecutionError("make failed", returncode=2))
        never = MagicMock()
        steps = [Step("a", first), Step("b", failing), Step("c", never)]
        result = self._result()

        with pytest.raises(ToolExecutionError):
            run_steps(settings, steps, result, session_factory=session_factory)

        first.assert_called_once_with(settings)
        never.assert_not_called()
        assert result.executed == ["a"]
        with get_session(session_factory) as session:
            statuses = {r.step: r.status for r in get_stage_records(session)}
        assert statuses == {"a": "succeeded", "b": "failed"}

    def test_cancel_is_recorded(self, settings, session_factory):
        steps = [Step("a", MagicMock(side_effect=OperationCancelled()))]
        with pytest.raises(OperationCancelled):
            run_steps(settings, steps, self._result(), session_factory=session_factory)

        with get_session(session_factory) as session:
            (record,) = get_stage_records(session)
        assert record.status == StepStatus.CANCELLED.value

    def test_unexpected_error_is_recorded(self, settings, session_factory):
        steps = [Step("a", MagicMock(side_effect=OSError("disk full")))]
        with pytest.raises(OSError):
            run_steps(settings, steps, self._result(), session_factory=session_factory)

        with get_session(session_factory) as session:
            (record,) = get_stage_records(session)
        assert record.error_code == "OSError"
        assert record.error_message == "disk full"

    def test_resume_skips_unchanged_steps(self, settings, session_factory):
        kernel = MagicMock()
        sync = MagicMock()
        steps = [Step("sync-kernel", sync, resumable=False), Step("kernel", kernel)]

        run_steps(settings, steps, self._result(), session_factory=session_factory)
        second = self._result()
        run_steps(
            settings, steps, second, resume=True, session_factory=session_factory
        )

        assert kernel.call_count == 1
        assert sync.call_count == 2
        assert second.executed == ["sync-kernel"]
        assert second.skipped == ["kernel"]

    def test_resume_reruns_after_config_change(self, settings, session_factory):
        kernel = MagicMock()
        steps = [Step("kernel", kernel)]
        run_steps(settings, steps, self._result(), session_factory=session_factory)

        changed = settings.model_copy(update={"kernel_defconfig": "other_defconfig"})
        run_steps(
            changed, steps, self._result(), resume=True, session_factory=session_factory
        )
        assert kernel.call_count == 2

    def test_rebuilt_step_reruns_later_steps(self, settings, session_factory):
        """A new U-Boot means the boot image is rebuilt as well."""
        uboot = MagicMock()
        image = MagicMock()
        steps = [Step("uboot", uboot), Step("image", image)]
        run_steps(settings, steps, self._result(), session_factory=session_factory)

        changed = settings.model_copy(update={"uboot_defconfig": "other_defconfig"})
        second = self._result()
        run_steps(changed, steps, second, resume=True, session_factory=session_factory)

        assert second.executed == ["uboot", "image"]
        assert second.skipped == []
        assert image.call_count == 2

    def test_skipped_step_does_not_force_rebuilds(self, settings, session_factory):
        kernel = MagicMock()
        uboot = MagicMock()
        steps = [Step("kernel", kernel), Step("uboot", uboot)]
        run_steps(settings, steps, self._result(), session_factory=session_factory)

        changed = settings.model_copy(update={"uboot_defconfig": "other_defconfig"})
        second = self._result()
        run_steps(changed, steps, second, resume=True, session_factory=session_factory)

        assert second.skipped == ["kernel"]
        assert second.executed == ["uboot"]

    def test_resume_after_interrupt_reruns(self, settings, session_factory):
        uboot = MagicMock()
        steps = [Step("uboot", uboot)]
        run_steps(settings, steps, self._result(), session_factory=session_factory)

        uboot.side_effect = KeyboardInterrupt
        with pytest.raises(KeyboardInterrupt):
            run_steps(settings, steps, self._result(), session_factory=session_factory)

        uboot.side_effect = None
        third = self._result()
        run_steps(
            settings, steps, third, resume=True, session_factory=session_factory
        )
        assert third.executed == ["uboot"]
        assert third.skipped == []

    def test_without_resume_everything_runs(self, settings, session_factory):
        kernel = MagicMock()
        steps = [Step("kernel", kernel)]
        run_steps(settings, steps, self._result(), session_factory=session_factory)
        run_steps(settings, steps, self._result(), session_factory=session_factory)
        assert kernel.call_count == 2


class TestClean:
    """Tests for clean."""

    def _populate(self, settings):
        for path in clean_paths(settings, CleanTarget.ALL):
            path.mkdir(parents=True)
            (path / "marker").write_text("x")

    def test_dry_run_removes_nothing(self, settings):
        self._populate(settings)
        dry = settings.model_copy(update={"dry_run": True})

        removed = clean(dry, CleanTarget.ALL)

        assert removed == clean_paths(settings, CleanTarget.ALL)
        assert all(path.exists() for path in removed)

    def test_clean_kernel(self, settings):
        self._populate(settings)
        clean(settings, CleanTarget.KERNEL)

        assert not settings.kernel_dir.exists()
        assert not settings.kernel_output_dir.exists()
        assert settings.uboot_dir.exists()

    def test_clean_image_keeps_other_tools(self, settings):
        settings.mkimage_dir.mkdir(parents=True)
        settings.atf_dir.mkdir(parents=True)
        settings.boot_image_path.write_bytes(b"image")

        removed = clean(settings, CleanTarget.IMAGE)

        assert removed == [settings.mkimage_dir, settings.boot_image_path]
        assert settings.atf_dir.is_dir()

    def test_clean_all_keeps_log(self, settings):
        self._populate(settings)
        settings.effective_log_file.write_text("log\n")
        clean(settings, CleanTarget.ALL)
        assert settings.effective_log_file.exists()
        assert not settings.tools_dir.exists()

    def test_forgets_stage_records(self, settings, session_factory):
        steps = [Step("kernel", MagicMock()), Step("uboot", MagicMock())]
        run_steps(
            settings,
            steps,
            PipelineResult(run_id="run-1", target="build"),
            session_factory=session_factory,
        )

        clean(settings, CleanTarget.KERNEL, session_factory=session_factory)

        with get_session(session_factory) as session:
            assert [r.step for r in get_stage_records(session)] == ["uboot"]

    def test_nothing_to_clean(self, settings):
        assert clean(settings, CleanTarget.UBOOT) == []


class TestRunPipeline:
    """Tests for run_pipeline."""

    def test_requires_workdir(self):
        with pytest.raises(ConfigurationError) as exc_info:
            run_pipeline(Settings(_env_file=None), parse_target("kernel"))
        assert exc_info.value.error_code == "WORKDIR_REQUIRED"

    def test_flash_without_device(self, settings, no_dependency_check):
        with pytest.raises(FlashDeviceRequiredError):
            run_pipeline(settings, parse_target("flash"))
        no_dependency_check.assert_not_called()

    def test_dts_on_fresh_tree(self, settings, no_dependency_check, session_factory):
        """Clone, one 'make dtbs', then a missing dts directory is fatal."""
        with (
            patch(
                "imx_bootstack.sources.git.run_command", side_effect=_ok
            ) as mock_git,
            patch(
                "imx_bootstack.builds.stages.run_command", side_effect=_ok
            ) as mock_make,
            pytest.raises(MissingOutputError),
        ):
            run_pipeline(
                settings, parse_target("dts"), session_factory=session_factory
            )

        assert mock_git.call_args_list[0].args[0][:2] == ["git", "clone"]
        assert [c.args[0] for c in mock_make.call_args_list] == [
            ["make", "-j4", "dtbs"]
        ]
        with get_session(session_factory) as session:
            statuses = {r.step: r.status for r in get_stage_records(session)}
        assert statuses == {"sync-kernel": "succeeded", "dts": "failed"}

    def test_dts_success(self, settings, no_dependency_check):
        def make_dtbs(command, **kwargs):
            (kwargs["cwd"] / "arch" / "arm64" / "boot" / "dts").mkdir(parents=True)
            return _ok(command)

        with (
            patch("imx_bootstack.sources.git.run_command", side_effect=_ok),
            patch("imx_bootstack.builds.stages.run_command", side_effect=make_dtbs),
        ):
            result = run_pipeline(settings, parse_target("dts"))

        assert result.target == "dts"
        assert result.executed == ["sync-kernel", "dts"]
        no_dependency_check.assert_called_once()

    def test_build_without_device_skips_flash(self, settings, no_dependency_check):
        with (
            patch("imx_bootstack.pipeline.run_steps") as mock_run_steps,
            patch("imx_bootstack.pipeline.flash_device") as mock_flash,
        ):
            result = run_pipeline(settings, parse_target("build"))

        mock_run_steps.assert_called_once()
        mock_flash.assert_not_called()
        assert "flash" not in result.executed

    def test_all_with_device_flashes(self, settings, no_dependency_check):
        flashing = settings.model_copy(update={"flash_device": "/dev/sdb"})
        confirm = MagicMock()
        with (
            patch("imx_bootstack.pipeline.run_steps"),
            patch("imx_bootstack.pipeline.flash_device") as mock_flash,
        ):
            result = run_pipeline(flashing, parse_target("all"), confirm=confirm)

        assert mock_flash.call_args.kwargs["run_id"] == result.run_id
        assert mock_flash.call_args.kwargs["confirm"] is confirm
        assert result.executed[-1] == "flash"

    def test_clean_dispatch(self, settings, no_dependency_check):
        settings.uboot_dir.mkdir(parents=True)
        result = run_pipeline(settings, parse_target("clean:uboot"))

        assert result.executed == [str(settings.uboot_dir)]
        assert not settings.uboot_dir.exists()
        no_dependency_check.assert_not_called()
