"""Overlay partition formatting.

Supported Filesystems:
    ext4:   ``mkfs.ext4 -F -L <label>``
    f2fs:   ``mkfs.f2fs -f -l <label>``

The volume label defaults to ``rootfs_data``, the name OpenWrt's mount_root
looks for when it picks up an overlay partition.
"""

from __future__ import annotations

from typing import Optional

from overlay_separator.config.settings import DEFAULT_OVERLAY_LABEL
from overlay_separator.logging import LoggerFactory
from overlay_separator.storage.commands import describe_failure, run_command
from overlay_separator.storage.exceptions import FormatOperationError


log = LoggerFactory.for_filesystem()

FORMAT_TOOLS = {
    "ext4": "mkfs.ext4",
    "f2fs": "mkfs.f2fs",
}


def build_format_command(
    partition_path: str, filesystem: str, label: Optional[str]
) -> list[str]:
    filesystem = filesystem.lower()
    if filesystem == "ext4":
        command = ["mkfs.ext4", "-F"]
        if label:
            command.extend(["-L", label])
    elif filesystem == "f2fs":
        command = ["mkfs.f2fs", "-f"]
        if label:
            command.extend(["-l", label])
    else:
        raise FormatOperationError(
            f"Unsupported overlay filesystem: {filesystem}", device=partition_path
        )
    command.append(partition_path)
    return command


def format_overlay(
    partition_path: str,
    filesystem: str,
    label: Optional[str] = DEFAULT_OVERLAY_LABEL,
) -> None:
    """Format the overlay partition, raising FormatOperationError on failure."""
    command = build_format_command(partition_path, filesystem, label)
    log.info(f"Formatting {partition_path} as {filesystem} (label {label})")
    try:
        result = run_command(command, check=False)
    except OSError as error:
        raise FormatOperationError(
            f"Cannot run {command[0]}: {error}", device=partition_path, command=command
        ) from error
    if result.returncode != 0:
        log.debug(f"Format command failed with code {result.returncode}")
        raise FormatOperationError(
            describe_failure(command, result), device=partition_path, command=command
        )
    log.debug(f"Successfully formatted {partition_path} as {filesystem}")
