"""Source acquisition: git checkouts, patches and vendor firmware."""

from imx_bootstack.sources.firmware import (
    DownloadError,
    DownloadResult,
    download_file,
    prepare_ddr_firmware,
)
from imx_bootstack.sources.git import (
    CheckoutError,
    CloneError,
    FetchError,
    NotARepositoryError,
    PatchError,
    PullError,
    RepositoryError,
    SyncResult,
    apply_patches,
    sync_repository,
)

__all__ = [
    # Git
    "CheckoutError",
    "CloneError",
    "FetchError",
    "NotARepositoryError",
    "PatchError",
    "PullError",
    "RepositoryError",
    "SyncResult",
    "apply_patches",
    "sync_repository",
    # Firmware
    "DownloadError",
    "DownloadResult",
    "download_file",
    "prepare_ddr_firmware",
]
