"""Step input fingerprints.

This module handles:
- Selecting the configuration fields that affect each pipeline step
- Deterministic hash computation over those fields and source revisions

A resumed run skips a step only when its latest successful record carries
the same fingerprint, so changing a relevant setting or pulling new commits
makes the step run again.
"""

from __future__ import annotations

import hashlib
import json
from dataclasses import asdict, dataclass, field
from typing import Any

from imx_bootstack.config import Settings

# Bump when the fingerprint format changes
FINGERPRINT_SCHEMA_VERSION = "1"

_TOOLCHAIN = ("arch", "cross_compile")

STEP_INPUTS: dict[str, tuple[str, ...]] = {
    "kernel": (*_TOOLCHAIN, "kernel_defconfig", "clean_kernel"),
    "dts": (*_TOOLCHAIN, "custom_dts"),
    "kernel-artifacts": (*_TOOLCHAIN, "custom_dts"),
    "uboot": (*_TOOLCHAIN, "uboot_defconfig"),
    "atf": (*_TOOLCHAIN, "atf_platform"),
    "ddr-firmware": ("ddr_firmware_url",),
    "patch-mkimage": ("mkimage_patches",),
    "boot-inputs": ("uboot_dtbs",),
    "image": (
        "soc_target",
        "uboot_dtbs",
        "mkimage_target",
        "output_image",
        "make_cc",
        "tools_dir_name",
    ),
}


@dataclass
class StepInputs:
    """Canonical representation of a step's inputs.

    Attributes:
        schema_version: Version of the fingerprint schema.
        step: Step name.
        settings: Relevant configuration values.
        revisions: Source tree revisions keyed by tree name.
    """

    schema_version: str = FINGERPRINT_SCHEMA_VERSION
    step: str = ""
    settings: dict[str, Any] = field(default_factory=dict)
    revisions: dict[str, str | None] = field(default_factory=dict)


def create_step_inputs(
    step: str,
    settings: Settings,
    revisions: dict[str, str | None] | None = None,
) -> StepInputs:
    """Snapshot the inputs of ``step``.

    Args:
        step: Step name.
        settings: Build configuration.
        revisions: Commit ids of the source trees the step reads.

    Returns:
        StepInputs instance.
    """
    values = {name: getattr(settings, name) for name in STEP_INPUTS.get(step, ())}
    return StepInputs(
        step=step,
        settings=values,
        revisions=dict(sorted((revisions or {}).items())),
    )


def compute_fingerprint(inputs: StepInputs) -> str:
    """Compute the SHA-256 of the canonical JSON form of ``inputs``."""
    canonical = json.dumps(asdict(inputs), sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


__all__ = [
    "FINGERPRINT_SCHEMA_VERSION",
    "STEP_INPUTS",
    "StepInputs",
    "compute_fingerprint",
    "create_step_inputs",
]
