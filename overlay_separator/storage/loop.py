"""Loop device attachment for working images.

A working image is only visible to partitioning tools while it is bound to a
loop device. Loop devices are a finite, system-wide resource, so every
binding made here must be released again, whatever happens in between.

Usage:
    from overlay_separator.storage.loop import attached_image

    with attached_image(Path("/tmp/work.img")) as binding:
        table = read_partition_table(binding.device)

``attached_image`` detaches on every exit path. When the body raises, the
detach is best-effort and a detach failure is logged without replacing the
original error. On a normal exit a detach failure raises LoopDetachError.
"""

from __future__ import annotations

import shutil
import subprocess
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional

from overlay_separator.logging import LoggerFactory
from overlay_separator.storage.commands import describe_failure, run_command
from overlay_separator.storage.exceptions import (
    LoopAttachError,
    LoopDetachError,
    NoFreeLoopDeviceError,
)
from overlay_separator.storage.models import LoopBinding


log = LoggerFactory.for_loop()


def find_free_device() -> Optional[str]:
    """Return the path of an unused loop device, or None if there is none."""
    try:
        result = run_command(["losetup", "-f"], check=False, log_output=False)
    except OSError as error:
        log.debug(f"Cannot run losetup: {error}")
        return None
    device = (result.stdout or "").strip()
    if result.returncode != 0 or not device:
        log.debug(f"losetup -f found no free device (rc={result.returncode})")
        return None
    return device


def attach(device: str, image_path, scan_partitions: bool = True) -> None:
    """Bind image_path to device, optionally scanning its partition table."""
    command = ["losetup"]
    if scan_partitions:
        command.append("-P")
    command.extend([device, str(image_path)])
    try:
        result = run_command(command, check=False)
    except OSError as error:
        raise LoopAttachError(f"Cannot run losetup: {error}", command) from error
    if result.returncode != 0:
        raise LoopAttachError(
            f"Failed to attach {image_path} to {device}: "
            + describe_failure(command, result),
            command,
        )


def detach(device: str) -> None:
    command = ["losetup", "-d", device]
    try:
        result = run_command(command, check=False)
    except OSError as error:
        raise LoopDetachError(f"Cannot run losetup: {error}", command) from error
    if result.returncode != 0:
        raise LoopDetachError(
            f"Failed to detach {device}: " + describe_failure(command, result),
            command,
        )


def settle() -> None:
    """Wait for udev to create partition nodes (best effort)."""
    if not shutil.which("udevadm"):
        return
    try:
        run_command(["udevadm", "settle", "--timeout=10"], check=False, log_command=False)
    except (subprocess.CalledProcessError, OSError) as error:
        log.debug(f"udevadm settle failed: {error}")


def release(binding: LoopBinding) -> bool:
    """Detach without raising; returns False and logs when detach failed."""
    try:
        detach(binding.device)
    except LoopDetachError as error:
        log.warning(
            "Loop device {} may still be bound to {}: {}",
            binding.device,
            binding.backing_file,
            error,
        )
        return False
    log.debug(f"Released {binding.device}")
    return True


@contextmanager
def attached_image(image_path, *, scan_partitions: bool = True) -> Iterator[LoopBinding]:
    """Attach image_path to a free loop device for the duration of the block."""
    image_path = Path(image_path)
    device = find_free_device()
    if not device:
        raise NoFreeLoopDeviceError(str(image_path))

    log.info(f"Attaching {image_path} to {device}")
    attach(device, image_path, scan_partitions=scan_partitions)
    binding = LoopBinding(device=device, backing_file=image_path)

    try:
        settle()
        yield binding
    except BaseException:
        release(binding)
        raise
    log.info(f"Detaching {device}")
    detach(device)
