"""Backing file growth and in-place zero filling."""

from __future__ import annotations

import os
from pathlib import Path

from overlay_separator.logging import LoggerFactory
from overlay_separator.storage.exceptions import ImageResizeError, TailZeroError
from overlay_separator.storage.sizes import SECTOR_SIZE, align_up, human_size


log = LoggerFactory.for_filesystem()

ZERO_CHUNK_SIZE = 4 * 1024 * 1024


def grow_image(image_path, nbytes: int) -> int:
    """Append zero bytes to the image, rounded up to whole sectors.

    The image must not be attached to a loop device while it grows, since
    the device size is fixed at attach time.

    Returns:
        The number of bytes actually appended
    """
    if nbytes <= 0:
        return 0
    image_path = Path(image_path)
    aligned = align_up(nbytes, SECTOR_SIZE)
    try:
        current = image_path.stat().st_size
        log.info(f"Expanding {image_path} by {aligned} bytes ({human_size(aligned)})")
        os.truncate(image_path, current + aligned)
    except OSError as error:
        raise ImageResizeError(f"Failed to expand {image_path}: {error}") from error
    return aligned


def zero_range(path, offset: int, length: int) -> None:
    """Overwrite ``length`` bytes at ``offset`` with zeros, without truncating."""
    zeros = bytes(min(ZERO_CHUNK_SIZE, length))
    with open(path, "r+b") as handle:
        handle.seek(offset)
        remaining = length
        while remaining > 0:
            chunk = min(remaining, len(zeros))
            handle.write(zeros[:chunk])
            remaining -= chunk
        handle.flush()
        os.fsync(handle.fileno())


def zero_tail(device, partition_start: int, tail_start: int, allocated_size: int) -> int:
    """Zero the slack of a partition from ``tail_start`` to its allocated end.

    Offsets ``tail_start`` and ``allocated_size`` are relative to the
    partition, which starts at ``partition_start`` on ``device``.

    Returns:
        Number of bytes zeroed (0 when there is no slack)
    """
    if tail_start >= allocated_size:
        log.debug(
            f"No slack to zero: tail starts at {tail_start}, partition is {allocated_size} bytes"
        )
        return 0
    length = allocated_size - tail_start
    offset = partition_start + tail_start
    log.info(f"Zeroing {length} bytes of unused squashfs partition tail on {device}")
    try:
        zero_range(device, offset, length)
    except OSError as error:
        raise TailZeroError(
            f"Failed to zero partition tail on {device} at offset {offset}: {error}"
        ) from error
    return length
