"""i.MX boot stack builder - orchestration for i.MX8M boot artifacts.

This package drives the external toolchain (git, make, the cross compiler,
imx-mkimage, dd, parted) to produce a Linux kernel, device trees, modules,
U-Boot, ARM Trusted Firmware and the composite imx-boot image, and to flash
them to removable storage.
"""

__version__ = "0.1.0"
__all__ = ["__version__"]
