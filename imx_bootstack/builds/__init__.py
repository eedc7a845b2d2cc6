"""Build stages, artifact staging and stage history.

This module handles:
- Driving make in the kernel, U-Boot, ATF and imx-mkimage trees
- Staging kernel images, device trees, modules and boot image inputs
- Fingerprinting step inputs and recording step executions
"""

from imx_bootstack.builds.fingerprint import compute_fingerprint, create_step_inputs
from imx_bootstack.builds.history import (
    find_completed_stage,
    forget_stages,
    get_stage_records,
    start_stage_record,
)
from imx_bootstack.builds.models import StageRecord
from imx_bootstack.builds.stages import (
    DeviceTreeNotFoundError,
    build_atf,
    build_boot_image,
    build_device_trees,
    build_kernel,
    build_uboot,
)
from imx_bootstack.builds.staging import (
    KERNEL_IMAGE_NAMES,
    KernelArtifacts,
    OutputDirectoryError,
    stage_boot_inputs,
    stage_kernel_artifacts,
    validate_kernel_output,
)

__all__ = [
    # Models
    "StageRecord",
    # Stages
    "DeviceTreeNotFoundError",
    "build_atf",
    "build_boot_image",
    "build_device_trees",
    "build_kernel",
    "build_uboot",
    # Staging
    "KERNEL_IMAGE_NAMES",
    "KernelArtifacts",
    "OutputDirectoryError",
    "stage_boot_inputs",
    "stage_kernel_artifacts",
    "validate_kernel_output",
    # History
    "compute_fingerprint",
    "create_step_inputs",
    "find_completed_stage",
    "forget_stages",
    "get_stage_records",
    "start_stage_record",
]
