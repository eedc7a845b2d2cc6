"""Tests for flash/device.py - device validation."""

import stat
from contextlib import ExitStack
from unittest.mock import mock_open, patch

import pytest

from imx_bootstack.errors import ToolExecutionError
from imx_bootstack.flash.device import (
    DeviceInfo,
    DeviceMountedError,
    DeviceNotFoundError,
    NotBlockDeviceError,
    PartitionDeviceError,
    SystemDeviceError,
    describe_device_type,
    get_mount_points,
    get_root_device,
    is_block_device,
    is_partition_path,
    list_block_devices,
    partition_path,
    partition_to_whole_device,
    validate_device,
)
from imx_bootstack.types import CommandResult


def _block_device(stack, proc_mounts="", root_device="/dev/sda"):
    """Make every path look like an existing block device."""
    stack.enter_context(patch("os.path.exists", return_value=True))
    mock_stat = stack.enter_context(patch("os.stat"))
    mock_stat.return_value.st_mode = stat.S_IFBLK | 0o660
    stack.enter_context(patch("builtins.open", mock_open(read_data=proc_mounts)))
    stack.enter_context(
        patch(
            "imx_bootstack.flash.device.get_root_device", return_value=root_device
        )
    )
    stack.enter_context(
        patch("imx_bootstack.flash.device.get_device_size", return_value=8 << 30)
    )
    stack.enter_context(
        patch(
            "imx_bootstack.flash.device.describe_device_type", return_value="SD card"
        )
    )


class TestIsPartitionPath:
    """Tests for is_partition_path function."""

    def test_whole_devices(self):
        for path in ("/dev/sda", "/dev/mmcblk0", "/dev/nvme0n1", "/dev/loop0"):
            assert is_partition_path(path) is False, path

    def test_partitions(self):
        for path in ("/dev/sdb2", "/dev/mmcblk0p1", "/dev/nvme0n1p1", "/dev/loop1p2"):
            assert is_partition_path(path) is True, path

    def test_regular_file(self):
        assert is_partition_path("/tmp/imx-boot-sd.bin") is False


class TestPartitionPaths:
    """Tests for partition_path and partition_to_whole_device."""

    def test_partition_path_sd(self):
        assert partition_path("/dev/sdb", 1) == "/dev/sdb1"

    def test_partition_path_digit_suffix(self):
        assert partition_path("/dev/mmcblk0", 2) == "/dev/mmcblk0p2"
        assert partition_path("/dev/nvme0n1", 1) == "/dev/nvme0n1p1"

    def test_to_whole_device(self):
        assert partition_to_whole_device("/dev/sdb1") == "/dev/sdb"
        assert partition_to_whole_device("/dev/mmcblk0p2") == "/dev/mmcblk0"
        assert partition_to_whole_device("/dev/nvme0n1p1") == "/dev/nvme0n1"

    def test_whole_device_unchanged(self):
        assert partition_to_whole_device("/dev/sdb") == "/dev/sdb"


class TestIsBlockDevice:
    def test_regular_file(self, tmp_path):
        path = tmp_path / "disk.img"
        path.write_bytes(b"")
        assert is_block_device(str(path)) is False

    def test_nonexistent_path(self, tmp_path):
        assert is_block_device(str(tmp_path / "missing")) is False


class TestMountPoints:
    """Tests for /proc/mounts parsing."""

    def test_partitions_of_device(self):
        proc_mounts = (
            "/dev/sda1 / ext4 rw 0 0\n"
            "/dev/sdb1 /media/BOOT vfat rw 0 0\n"
            "/dev/sdb2 /media/rootfs ext4 rw 0 0\n"
        )
        with patch("builtins.open", mock_open(read_data=proc_mounts)):
            assert get_mount_points("/dev/sdb") == ["/media/BOOT", "/media/rootfs"]

    def test_similar_name_not_matched(self):
        proc_mounts = "/dev/sdbb1 /mnt ext4 rw 0 0\n"
        with patch("builtins.open", mock_open(read_data=proc_mounts)):
            assert get_mount_points("/dev/sdb") == []

    def test_read_error(self):
        with patch("builtins.open", side_effect=OSError("denied")):
            assert get_mount_points("/dev/sdb") == []

    def test_root_device(self):
        proc_mounts = "/dev/nvme0n1p2 / ext4 rw 0 0\n"
        with patch("builtins.open", mock_open(read_data=proc_mounts)):
            assert get_root_device() == "/dev/nvme0n1"


class TestDescribeDeviceType:
    """Tests for describe_device_type."""

    def _udev(self, output, returncode=0):
        return patch(
            "imx_bootstack.flash.device.run_command",
            return_value=CommandResult("udevadm info", returncode, output),
        )

    def test_sd_card(self):
        with self._udev("ID_BUS=usb\nID_DRIVE_FLASH_SD=1\n"):
            assert describe_device_type("/dev/sdb") == "SD card"

    def test_usb_drive(self):
        with self._udev("DEVNAME=/dev/sdc\nID_BUS=usb\n"):
            assert describe_device_type("/dev/sdc") == "USB drive"

    def test_udev_failure(self):
        with self._udev("", returncode=4):
            assert describe_device_type("/dev/sdb") == "unknown"

    def test_udevadm_missing(self):
        with patch(
            "imx_bootstack.flash.device.run_command",
            side_effect=ToolExecutionError("Command not found: udevadm"),
        ):
            assert describe_device_type("/dev/sdb") == "unknown"

    def test_lsblk_missing(self):
        with patch(
            "imx_bootstack.flash.device.run_command",
            side_effect=ToolExecutionError("Command not found: lsblk"),
        ):
            assert "lsblk unavailable" in list_block_devices()


class TestValidateDevice:
    """Tests for validate_device function."""

    def test_device_not_found(self):
        with (
            patch(
                "imx_bootstack.flash.device.list_block_devices",
                return_value="NAME SIZE TYPE MOUNTPOINT\nsdb 7.4G disk",
            ) as mock_list,
            pytest.raises(DeviceNotFoundError) as exc_info,
        ):
            validate_device("/dev/nonexistent_device_xyz")

        assert exc_info.value.error_code == "DEVICE_NOT_FOUND"
        mock_list.assert_called_once()

    def test_not_block_device(self, tmp_path):
        """A regular file is rejected and the block devices are listed."""
        path = tmp_path / "sdb"
        path.write_bytes(b"")
        with (
            patch(
                "imx_bootstack.flash.device.list_block_devices", return_value=""
            ) as mock_list,
            pytest.raises(NotBlockDeviceError) as exc_info,
        ):
            validate_device(str(path))

        assert exc_info.value.error_code == "NOT_BLOCK_DEVICE"
        mock_list.assert_called_once()

    def test_partition_not_allowed(self):
        with ExitStack() as stack:
            _block_device(stack)
            with pytest.raises(PartitionDeviceError) as exc_info:
                validate_device("/dev/sdb1")
        assert exc_info.value.error_code == "PARTITION_NOT_ALLOWED"

    def test_system_device_rejected(self):
        with ExitStack() as stack:
            _block_device(stack, root_device="/dev/sdb")
            with pytest.raises(SystemDeviceError):
                validate_device("/dev/sdb")

    def test_mounted_device_rejected(self):
        with ExitStack() as stack:
            _block_device(stack, proc_mounts="/dev/sdb1 /media/BOOT vfat rw 0 0\n")
            with pytest.raises(DeviceMountedError) as exc_info:
                validate_device("/dev/sdb")
        assert exc_info.value.mount_points == ["/media/BOOT"]

    def test_mounted_device_allowed(self):
        with ExitStack() as stack:
            _block_device(stack, proc_mounts="/dev/sdb1 /media/BOOT vfat rw 0 0\n")
            info = validate_device("/dev/sdb", allow_mounted=True)
        assert info.is_mounted is True

    def test_valid_device(self):
        with ExitStack() as stack:
            _block_device(stack, proc_mounts="/dev/sda1 / ext4 rw 0 0\n")
            info = validate_device("/dev/sdb")

        assert isinstance(info, DeviceInfo)
        assert info.path == "/dev/sdb"
        assert info.is_mounted is False
        assert info.size_bytes == 8 << 30
        assert info.device_type == "SD card"
