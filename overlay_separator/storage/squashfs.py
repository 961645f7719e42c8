"""Squashfs detection and content size measurement.

The content size of a squashfs image is the ``bytes_used`` field of its
superblock: the length of the compressed filesystem, independent of how large
the partition around it is. ``unsquashfs -s`` prints it as
``Filesystem size N bytes``; older releases only print a rounded Kbytes
figure, in which case the superblock is read directly.
"""

from __future__ import annotations

import re
import struct
from typing import Iterable, Optional

from overlay_separator.logging import LoggerFactory
from overlay_separator.storage.commands import run_command
from overlay_separator.storage.exceptions import DetectionError
from overlay_separator.storage.models import FilesystemReport, PartitionRecord
from overlay_separator.storage.partition_table import partition_path


log = LoggerFactory.for_filesystem()

SQUASHFS_MAGIC = b"hsqs"
SUPERBLOCK_SIZE = 96
BYTES_USED_OFFSET = 40

_SIZE_BYTES_PATTERN = re.compile(r"Filesystem size\s+(\d+)\s+bytes")


def parse_unsquashfs_size(output: str) -> Optional[int]:
    """Extract the exact byte size from ``unsquashfs -s`` output."""
    match = _SIZE_BYTES_PATTERN.search(output)
    if not match:
        return None
    return int(match.group(1))


def read_superblock_size(path: str) -> Optional[int]:
    """Read ``bytes_used`` from a squashfs superblock, None if not squashfs."""
    with open(path, "rb") as handle:
        header = handle.read(SUPERBLOCK_SIZE)
    if len(header) < SUPERBLOCK_SIZE or header[:4] != SQUASHFS_MAGIC:
        return None
    return struct.unpack_from("<Q", header, BYTES_USED_OFFSET)[0]


def probe(path: str, partition_index: int = 0) -> Optional[FilesystemReport]:
    """Return a report if ``path`` holds a squashfs filesystem, else None."""
    try:
        result = run_command(["unsquashfs", "-s", path], check=False, log_output=False)
    except OSError as error:
        log.debug(f"Cannot run unsquashfs on {path}: {error}")
        return None
    if result.returncode != 0:
        log.debug(f"{path} is not squashfs (unsquashfs rc={result.returncode})")
        return None

    size = parse_unsquashfs_size(result.stdout or "")
    if size is None:
        try:
            size = read_superblock_size(path)
        except OSError as error:
            log.warning(f"Cannot read squashfs superblock on {path}: {error}")
            return None
        if size is None:
            log.warning(f"unsquashfs accepted {path} but reported no size")
            return None
    return FilesystemReport(
        partition_index=partition_index,
        partition_path=path,
        content_size_bytes=size,
    )


def find_squashfs_partition(
    device: str, partitions: Iterable[PartitionRecord]
) -> tuple[PartitionRecord, FilesystemReport]:
    """Return the first partition, by ascending index, that holds squashfs."""
    for partition in sorted(partitions, key=lambda part: part.index):
        path = partition_path(device, partition.index)
        report = probe(path, partition.index)
        if report is not None:
            log.info(
                "Found squashfs on {} ({} bytes of content in {} byte partition)",
                path,
                report.content_size_bytes,
                partition.size,
            )
            return partition, report
    raise DetectionError(f"No squashfs partition found on {device}", device=device)
