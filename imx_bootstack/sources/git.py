"""Source repository synchronisation.

sync_repository converges a local directory to the tip of a remote branch:
clone when absent, otherwise fetch, checkout and fast-forward. A non-empty
directory that is not a git checkout is always refused; nothing is ever
deleted to make room for a clone.
"""

import logging
from dataclasses import dataclass
from pathlib import Path

from imx_bootstack.errors import ConfigurationError, ToolExecutionError
from imx_bootstack.shell import run_command

logger = logging.getLogger(__name__)


class RepositoryError(ToolExecutionError):
    """Base exception for git failures."""

    code = "GIT_FAILED"


class CloneError(RepositoryError):
    """git clone failed."""

    code = "CLONE_FAILED"


class FetchError(RepositoryError):
    """git fetch failed."""

    code = "FETCH_FAILED"


class CheckoutError(RepositoryError):
    """git checkout failed (usually an unknown branch)."""

    code = "CHECKOUT_FAILED"


class PullError(RepositoryError):
    """git pull failed (diverged or dirty tree)."""

    code = "PULL_FAILED"


class PatchError(RepositoryError):
    """A patch neither applies nor is already applied."""

    code = "PATCH_FAILED"


class NotARepositoryError(ConfigurationError):
    """Destination exists, is not empty, and is not a git checkout."""

    def __init__(self, path: Path) -> None:
        super().__init__(
            f"{path} exists but is not a git repository. "
            "Remove it or choose another working directory.",
            error_code="NOT_A_REPOSITORY",
        )
        self.path = path


@dataclass
class SyncResult:
    """Result of a repository sync.

    Attributes:
        path: Local checkout path.
        branch: Branch checked out.
        cloned: True when the checkout was created by this sync.
    """

    path: Path
    branch: str
    cloned: bool


def is_git_checkout(path: Path) -> bool:
    """Return True if ``path`` is the top of a git working tree."""
    return (path / ".git").exists()


def current_revision(path: Path) -> str | None:
    """Return the commit id checked out in ``path``, or None if unknown."""
    if not is_git_checkout(path):
        return None
    result = run_command(
        ["git", "rev-parse", "HEAD"], cwd=path, capture_output=True, check=False
    )
    if result.returncode != 0:
        return None
    return result.output.strip() or None


def _git(
    args: list[str],
    error_cls: type[RepositoryError],
    cwd: Path | None = None,
) -> None:
    try:
        run_command(["git", *args], cwd=cwd)
    except ToolExecutionError as e:
        raise error_cls(
            e.message,
            command=e.command,
            returncode=e.returncode,
            error_code=error_cls.code,
        ) from e


def sync_repository(url: str, branch: str, dest: Path) -> SyncResult:
    """Ensure ``dest`` is a checkout of ``url`` at the tip of ``branch``.

    Args:
        url: Remote repository URL.
        branch: Branch to check out.
        dest: Local checkout directory.

    Returns:
        SyncResult describing the checkout.

    Raises:
        NotARepositoryError: ``dest`` is a non-empty, non-git directory.
        CloneError, FetchError, CheckoutError, PullError: git failed.
    """
    dest = Path(dest)

    if not dest.exists():
        logger.info("Cloning %s (%s) into %s", url, branch, dest)
        dest.parent.mkdir(parents=True, exist_ok=True)
        _git(["clone", "--branch", branch, url, str(dest)], CloneError)
        return SyncResult(path=dest, branch=branch, cloned=True)

    if is_git_checkout(dest):
        logger.info("Updating %s to the tip of %s", dest, branch)
        _git(["fetch", "origin"], FetchError, cwd=dest)
        _git(["checkout", branch], CheckoutError, cwd=dest)
        _git(["pull", "--ff-only", "origin", branch], PullError, cwd=dest)
        return SyncResult(path=dest, branch=branch, cloned=False)

    if dest.is_dir() and not any(dest.iterdir()):
        logger.info("Cloning %s (%s) into empty directory %s", url, branch, dest)
        _git(["clone", "--branch", branch, url, str(dest)], CloneError)
        return SyncResult(path=dest, branch=branch, cloned=True)

    raise NotARepositoryError(dest)


def apply_patches(repo_dir: Path, patches: list[Path]) -> list[Path]:
    """Apply patches to a checkout, skipping ones already applied.

    Args:
        repo_dir: Checkout to patch.
        patches: Patch files, applied in order.

    Returns:
        Patches that were applied by this call.

    Raises:
        ConfigurationError: A patch file does not exist.
        PatchError: A patch neither applies nor reverses cleanly.
    """
    applied: list[Path] = []
    for patch in patches:
        if not patch.is_file():
            raise ConfigurationError(
                f"Patch not found: {patch}", error_code="PATCH_NOT_FOUND"
            )

        forward = run_command(
            ["git", "apply", "--check", str(patch)],
            cwd=repo_dir,
            capture_output=True,
            check=False,
        )
        if forward.returncode == 0:
            logger.info("Applying patch: %s", patch.name)
            _git(["apply", str(patch)], PatchError, cwd=repo_dir)
            applied.append(patch)
            continue

        reverse = run_command(
            ["git", "apply", "--reverse", "--check", str(patch)],
            cwd=repo_dir,
            capture_output=True,
            check=False,
        )
        if reverse.returncode == 0:
            logger.info("Patch %s is already applied", patch.name)
            continue

        raise PatchError(
            f"Patch {patch.name} does not apply to {repo_dir}",
            command=forward.command,
            returncode=forward.returncode,
            error_code=PatchError.code,
        )

    return applied


__all__ = [
    "CheckoutError",
    "CloneError",
    "FetchError",
    "NotARepositoryError",
    "PatchError",
    "PullError",
    "RepositoryError",
    "SyncResult",
    "apply_patches",
    "current_revision",
    "is_git_checkout",
    "sync_repository",
]
