"""Tests for sources/git.py - repository sync and patching."""

from unittest.mock import patch

import pytest

from imx_bootstack.errors import ConfigurationError, ToolExecutionError
from imx_bootstack.sources.git import (
    CheckoutError,
    CloneError,
    NotARepositoryError,
    PatchError,
    PullError,
    apply_patches,
    current_revision,
    sync_repository,
)
from imx_bootstack.types import CommandResult

URL = "https://github.com/varigit/linux-imx.git"
BRANCH = "lf-6.6.y_var01"


def _commands(mock_run):
    return [call.args[0] for call in mock_run.call_args_list]


def _ok(command, **kwargs):
    return CommandResult(command=" ".join(command), returncode=0)


class TestSyncRepository:
    """Tests for sync_repository."""

    def test_fresh_clone(self, tmp_path):
        """A missing destination is cloned on the requested branch."""
        dest = tmp_path / "work" / "linux-imx"
        with patch(
            "imx_bootstack.sources.git.run_command", side_effect=_ok
        ) as mock_run:
            result = sync_repository(URL, BRANCH, dest)

        assert result.cloned is True
        assert result.branch == BRANCH
        assert dest.parent.is_dir()
        assert _commands(mock_run) == [
            ["git", "clone", "--branch", BRANCH, URL, str(dest)]
        ]

    def test_existing_checkout_is_updated(self, tmp_path):
        """An existing checkout is fetched, switched and fast-forwarded."""
        dest = tmp_path / "linux-imx"
        (dest / ".git").mkdir(parents=True)
        with patch(
            "imx_bootstack.sources.git.run_command", side_effect=_ok
        ) as mock_run:
            result = sync_repository(URL, "other-branch", dest)

        assert result.cloned is False
        assert _commands(mock_run) == [
            ["git", "fetch", "origin"],
            ["git", "checkout", "other-branch"],
            ["git", "pull", "--ff-only", "origin", "other-branch"],
        ]
        for call in mock_run.call_args_list:
            assert call.kwargs["cwd"] == dest

    def test_resync_is_idempotent(self, tmp_path):
        """Syncing twice issues the same update and never re-clones."""
        dest = tmp_path / "linux-imx"
        (dest / ".git").mkdir(parents=True)
        with patch(
            "imx_bootstack.sources.git.run_command", side_effect=_ok
        ) as mock_run:
            sync_repository(URL, BRANCH, dest)
            first = _commands(mock_run)
            mock_run.reset_mock()
            sync_repository(URL, BRANCH, dest)

        assert _commands(mock_run) == first
        assert all(cmd[1] != "clone" for cmd in first)

    def test_empty_directory_is_cloned_into(self, tmp_path):
        dest = tmp_path / "linux-imx"
        dest.mkdir()
        with patch(
            "imx_bootstack.sources.git.run_command", side_effect=_ok
        ) as mock_run:
            result = sync_repository(URL, BRANCH, dest)

        assert result.cloned is True
        assert _commands(mock_run)[0][:2] == ["git", "clone"]

    def test_non_git_directory_is_fatal(self, tmp_path):
        """A non-empty directory without .git is rejected untouched."""
        dest = tmp_path / "linux-imx"
        dest.mkdir()
        (dest / "notes.txt").write_text("keep me")
        with (
            patch("imx_bootstack.sources.git.run_command") as mock_run,
            pytest.raises(NotARepositoryError) as exc_info,
        ):
            sync_repository(URL, BRANCH, dest)

        assert exc_info.value.error_code == "NOT_A_REPOSITORY"
        mock_run.assert_not_called()
        assert (dest / "notes.txt").read_text() == "keep me"

    def test_clone_failure(self, tmp_path):
        with (
            patch(
                "imx_bootstack.sources.git.run_command",
                side_effect=ToolExecutionError("boom", returncode=128),
            ),
            pytest.raises(CloneError) as exc_info,
        ):
            sync_repository(URL, BRANCH, tmp_path / "linux-imx")
        assert exc_info.value.error_code == "CLONE_FAILED"
        assert exc_info.value.returncode == 128

    def test_unknown_branch_is_checkout_error(self, tmp_path):
        dest = tmp_path / "linux-imx"
        (dest / ".git").mkdir(parents=True)

        def fail_checkout(command, **kwargs):
            if command[1] == "checkout":
                raise ToolExecutionError("pathspec did not match", returncode=1)
            return _ok(command)

        with (
            patch("imx_bootstack.sources.git.run_command", side_effect=fail_checkout),
            pytest.raises(CheckoutError) as exc_info,
        ):
            sync_repository(URL, "no-such-branch", dest)
        assert exc_info.value.error_code == "CHECKOUT_FAILED"

    def test_diverged_history_is_pull_error(self, tmp_path):
        dest = tmp_path / "linux-imx"
        (dest / ".git").mkdir(parents=True)

        def fail_pull(command, **kwargs):
            if command[1] == "pull":
                raise ToolExecutionError("Not possible to fast-forward", returncode=1)
            return _ok(command)

        with (
            patch("imx_bootstack.sources.git.run_command", side_effect=fail_pull),
            pytest.raises(PullError),
        ):
            sync_repository(URL, BRANCH, dest)


class TestCurrentRevision:
    """Tests for current_revision."""

    def test_not_a_checkout(self, tmp_path):
        assert current_revision(tmp_path) is None

    def test_reads_head(self, tmp_path):
        (tmp_path / ".git").mkdir()
        with patch(
            "imx_bootstack.sources.git.run_command",
            return_value=CommandResult("git rev-parse HEAD", 0, "abc123\n"),
        ):
            assert current_revision(tmp_path) == "abc123"

    def test_failure_is_unknown(self, tmp_path):
        (tmp_path / ".git").mkdir()
        with patch(
            "imx_bootstack.sources.git.run_command",
            return_value=CommandResult("git rev-parse HEAD", 128, ""),
        ):
            assert current_revision(tmp_path) is None


class TestApplyPatches:
    """Tests for apply_patches."""

    @pytest.fixture
    def patch_file(self, tmp_path):
        path = tmp_path / "0001-soc.patch"
        path.write_text("--- a/soc.mak\n+++ b/soc.mak\n")
        return path

    def test_applies_clean_patch(self, tmp_path, patch_file):
        with patch(
            "imx_bootstack.sources.git.run_command", side_effect=_ok
        ) as mock_run:
            applied = apply_patches(tmp_path, [patch_file])

        assert applied == [patch_file]
        assert _commands(mock_run) == [
            ["git", "apply", "--check", str(patch_file)],
            ["git", "apply", str(patch_file)],
        ]

    def test_skips_applied_patch(self, tmp_path, patch_file):
        """A patch that only reverses cleanly is already applied."""

        def check(command, **kwargs):
            rc = 0 if "--reverse" in command else 1
            return CommandResult(" ".join(command), rc)

        with patch(
            "imx_bootstack.sources.git.run_command", side_effect=check
        ) as mock_run:
            applied = apply_patches(tmp_path, [patch_file])

        assert applied == []
        assert ["git", "apply", str(patch_file)] not in _commands(mock_run)

    def test_conflicting_patch(self, tmp_path, patch_file):
        with (
            patch(
                "imx_bootstack.sources.git.run_command",
                return_value=CommandResult("git apply --check", 1),
            ),
            pytest.raises(PatchError) as exc_info,
        ):
            apply_patches(tmp_path, [patch_file])
        assert exc_info.value.error_code == "PATCH_FAILED"

    def test_missing_patch_file(self, tmp_path):
        with (
            patch("imx_bootstack.sources.git.run_command") as mock_run,
            pytest.raises(ConfigurationError) as exc_info,
        ):
            apply_patches(tmp_path, [tmp_path / "missing.patch"])
        assert exc_info.value.error_code == "PATCH_NOT_FOUND"
        mock_run.assert_not_called()
