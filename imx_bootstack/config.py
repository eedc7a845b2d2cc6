"""Configuration settings for imx_bootstack.

Uses pydantic-settings for config parsing from an environment file,
environment variables and defaults. Configuration precedence:
CLI flags > env vars > env file > defaults. The resulting Settings object
is frozen: it is built once per invocation and never mutated.
"""

import os
from pathlib import Path
from typing import Any, Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from imx_bootstack.errors import ConfigurationError
from imx_bootstack.types import DtsSelection

DEFAULT_ENV_FILE = ".env"

_MKIMAGE_PATCH_DIR = "recipes-bsp/imx-mkimage/imx-boot"


def _default_jobs() -> int:
    """Return the default make parallelism (processor core count)."""
    return os.cpu_count() or 1


def _default_mkimage_patches() -> str:
    """Return the default imx-mkimage patch list, relative to the BSP checkout."""
    return ",".join(
        [
            f"{_MKIMAGE_PATCH_DIR}/0001-iMX8M-soc-allow-dtb-override.patch",
            f"{_MKIMAGE_PATCH_DIR}/0002-iMX8M-soc-change-padding-of-DDR4-and-LPDDR4-DMEM-fir.patch",
        ]
    )


class Settings(BaseSettings):
    """Build configuration.

    Settings are loaded from environment variables with the IMX_BOOT_ prefix
    (also read from an env file). CLI flags override these at runtime.
    """

    model_config = SettingsConfigDict(
        env_prefix="IMX_BOOT_",
        env_file=DEFAULT_ENV_FILE,
        env_file_encoding="utf-8",
        extra="ignore",
        frozen=True,
    )

    # Working tree
    workdir: Path | None = Field(
        default=None,
        description="Root directory holding every source tree and output",
    )

    # Kernel
    kernel_repo: str = Field(
        default="https://github.com/varigit/linux-imx.git",
        description="Kernel source repository",
    )
    kernel_branch: str = Field(
        default="lf-6.6.y_var01", description="Kernel branch to build"
    )
    kernel_defconfig: str = Field(
        default="imx_v8_defconfig", description="Kernel defconfig target"
    )
    custom_dts: str = Field(
        default="all",
        description="Device trees to build: 'all' or comma-separated DTS names",
    )
    clean_kernel: bool = Field(
        default=False, description="Run 'make mrproper' before configuring"
    )

    # U-Boot
    uboot_repo: str = Field(
        default="https://github.com/varigit/uboot-imx.git",
        description="U-Boot source repository",
    )
    uboot_branch: str = Field(
        default="lf_v2023.04_var02", description="U-Boot branch to build"
    )
    uboot_defconfig: str = Field(
        default="imx8mp_var_dart_defconfig", description="U-Boot defconfig target"
    )
    uboot_dtbs: str = Field(
        default=(
            "imx8mp-var-dart-dt8mcustomboard.dtb "
            "imx8mp-var-dart-dt8mcustomboard-legacy.dtb "
            "imx8mp-var-som-symphony.dtb"
        ),
        description="Space-separated U-Boot DTBs packed into the boot image",
    )

    # Trusted firmware
    atf_repo: str = Field(
        default="https://github.com/varigit/imx-atf.git",
        description="ARM Trusted Firmware repository",
    )
    atf_branch: str = Field(default="lf_v2.8_var03", description="ATF branch")
    atf_platform: str = Field(default="imx8mp", description="ATF PLAT value")

    # Boot image tooling
    mkimage_repo: str = Field(
        default="https://github.com/nxp-imx/imx-mkimage.git",
        description="imx-mkimage repository",
    )
    mkimage_branch: str = Field(
        default="lf-6.6.3_1.0.0", description="imx-mkimage branch"
    )
    bsp_repo: str = Field(
        default="https://github.com/varigit/meta-variscite-bsp.git",
        description="BSP layer providing imx-mkimage patches",
    )
    bsp_branch: str = Field(default="mickledore-var02", description="BSP branch")
    mkimage_patches: str = Field(
        default_factory=_default_mkimage_patches,
        description="Comma-separated patches (relative to the BSP checkout)",
    )
    ddr_firmware_url: str = Field(
        default="https://www.nxp.com/lgfiles/NMG/MAD/YOCTO/firmware-imx-8.18.bin",
        description="NXP firmware self-extractor holding DDR training blobs",
    )
    soc_target: str = Field(default="iMX8MP", description="soc.mak SOC value")
    mkimage_target: str = Field(
        default="flash_evk", description="soc.mak make target"
    )
    output_image: str = Field(
        default="imx-boot-sd.bin", description="Composite boot image file name"
    )
    make_cc: str = Field(default="gcc", description="Host compiler for imx-mkimage")
    tools_dir_name: str = Field(
        default="imx-boot-tools", description="Boot tools directory under workdir"
    )

    # Toolchain
    arch: str = Field(default="arm64", description="Target ARCH")
    cross_compile: str = Field(
        default="aarch64-linux-gnu-", description="CROSS_COMPILE prefix"
    )
    jobs: int = Field(
        default_factory=_default_jobs, ge=1, description="Parallel make jobs"
    )

    # Flashing
    flash_device: str | None = Field(
        default=None, description="Block device to flash"
    )
    boot_label_pattern: str = Field(
        default="BOOT*", description="Glob matched against the boot partition label"
    )
    rootfs_label: str = Field(
        default="rootfs", description="Exact root filesystem partition label"
    )

    # Operational modes
    dry_run: bool = Field(
        default=False, description="Describe destructive operations, do not run them"
    )
    verbose: bool = Field(default=False, description="Verbose build tool output")
    assume_yes: bool = Field(
        default=False, description="Skip interactive confirmations"
    )
    log_file: Path | None = Field(
        default=None, description="Log file (defaults to <workdir>/build.log)"
    )
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO", description="Logging level"
    )
    db_url: str | None = Field(
        default=None,
        description="Run history database (defaults to SQLite inside workdir)",
    )

    @field_validator("workdir")
    @classmethod
    def _resolve_workdir(cls, value: Path | None) -> Path | None:
        if value is None:
            return None
        return value.expanduser().resolve()

    @field_validator("custom_dts")
    @classmethod
    def _check_custom_dts(cls, value: str) -> str:
        DtsSelection.parse(value)
        return value.strip()

    # Derived values

    @property
    def root(self) -> Path:
        """Return the working directory, which every pipeline run requires.

        Raises:
            ConfigurationError: If no working directory was configured.
        """
        if self.workdir is None:
            raise ConfigurationError(
                "Working directory is required (-w/--workdir)",
                error_code="WORKDIR_REQUIRED",
            )
        return self.workdir

    @property
    def dts_selection(self) -> DtsSelection:
        return DtsSelection.parse(self.custom_dts)

    @property
    def uboot_dtb_list(self) -> list[str]:
        return self.uboot_dtbs.split()

    @property
    def mkimage_patch_list(self) -> list[str]:
        return [p.strip() for p in self.mkimage_patches.split(",") if p.strip()]

    @property
    def kernel_dir(self) -> Path:
        return self.root / "linux-imx"

    @property
    def kernel_output_dir(self) -> Path:
        return self.root / "linux-imx-kernel-output"

    @property
    def modules_staging_dir(self) -> Path:
        return self.root / "linux-imx-modules"

    @property
    def uboot_dir(self) -> Path:
        return self.root / "uboot-imx"

    @property
    def tools_dir(self) -> Path:
        return self.root / self.tools_dir_name

    @property
    def atf_dir(self) -> Path:
        return self.tools_dir / "imx-atf"

    @property
    def mkimage_dir(self) -> Path:
        return self.tools_dir / "imx-mkimage"

    @property
    def bsp_dir(self) -> Path:
        return self.tools_dir / "meta-variscite-bsp"

    @property
    def boot_image_path(self) -> Path:
        return self.tools_dir / self.output_image

    @property
    def effective_log_file(self) -> Path:
        return self.log_file if self.log_file is not None else self.root / "build.log"

    @property
    def effective_db_url(self) -> str:
        if self.db_url is not None:
            return self.db_url
        return f"sqlite:///{self.root / '.imx-bootstack.sqlite'}"


def get_settings() -> Settings:
    """Get the application settings.

    Returns:
        Settings instance loaded from environment.
    """
    return Settings()


def load_settings(env_file: Path | None = None, **overrides: Any) -> Settings:
    """Build settings from an env file, the environment and CLI overrides.

    Overrides whose value is None are ignored, so unset CLI flags fall back
    to the environment and the defaults.

    Args:
        env_file: Environment file to read instead of ``.env``.
        **overrides: Field values taken from the command line.

    Returns:
        Frozen Settings instance.

    Raises:
        ConfigurationError: If an explicitly requested env file is missing.
    """
    if env_file is not None and not env_file.is_file():
        raise ConfigurationError(
            f"Environment file not found: {env_file}", error_code="ENV_FILE_NOT_FOUND"
        )
    values = {key: value for key, value in overrides.items() if value is not None}
    return Settings(_env_file=env_file or DEFAULT_ENV_FILE, **values)  # type: ignore[call-arg]


def print_settings_json(settings: Settings | None = None) -> str:
    """Render effective settings as JSON.

    Args:
        settings: Optional settings instance; uses default if not provided.

    Returns:
        JSON string of effective settings.
    """
    if settings is None:
        settings = get_settings()
    return settings.model_dump_json(indent=2)


__all__ = [
    "DEFAULT_ENV_FILE",
    "Settings",
    "get_settings",
    "load_settings",
    "print_settings_json",
]
