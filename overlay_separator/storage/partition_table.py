"""Partition table inspection and mutation with parted.

This module handles partition table access on an attached loop device:
- Reading the table in byte units (``parted -m ... unit B print``)
- Deleting a partition by index
- Creating a partition at explicit byte bounds
- Identifying the index parted assigned to a new partition

parted picks the index of a new partition itself. ``create_partition_tracked``
therefore snapshots the index set, creates the partition, snapshots again and
takes the difference. Exactly one new index must appear.
"""
from __future__ import annotations

import os
import shutil
import subprocess
import time
from typing import Iterable, Optional

from overlay_separator.logging import LoggerFactory
from overlay_separator.storage.commands import describe_failure, run_command
from overlay_separator.storage.exceptions import (
    NewPartitionIndexError,
    PartitionTableError,
)
from overlay_separator.storage.models import PartitionRecord, PartitionTable


log = LoggerFactory.for_partition()


def partition_path(device: str, index: int) -> str:
    """Kernel node of partition ``index`` on ``device`` (e.g. /dev/loop0p2)."""
    suffix = "p" if device[-1].isdigit() else ""
    return f"{device}{suffix}{index}"


def _parse_bytes(value: str) -> Optional[int]:
    value = value.strip()
    if value.endswith("B"):
        value = value[:-1]
    if not value.isdigit():
        return None
    return int(value)


def parse_parted_machine_output(device: str, output: str) -> PartitionTable:
    """Parse ``parted -s -m <dev> unit B print`` output.

    Disk line: ``path:size:transport:logical:physical:label:model:flags;``
    Partition lines: ``number:start:end:size:fs:name:flags;``
    """
    sector_size = 512
    label: Optional[str] = None
    partitions: list[PartitionRecord] = []

    for line in output.splitlines():
        stripped = line.strip().rstrip(";")
        if not stripped or stripped in ("BYT", "CHS", "CYL"):
            continue
        fields = stripped.split(":")
        if fields[0].startswith("/"):
            if len(fields) > 3 and fields[3].isdigit():
                sector_size = int(fields[3])
            if len(fields) > 5 and fields[5]:
                label = fields[5]
            continue
        if not fields[0].isdigit() or len(fields) < 4:
            continue
        start = _parse_bytes(fields[1])
        size = _parse_bytes(fields[3])
        if start is None or size is None or size <= 0:
            log.debug(f"Skipping unparseable partition line: {line.strip()}")
            continue
        partitions.append(
            PartitionRecord(index=int(fields[0]), start=start, end=start + size)
        )

    partitions.sort(key=lambda part: part.index)
    return PartitionTable(
        device=device, sector_size=sector_size, label=label, partitions=partitions
    )


def _run_parted(device: str, *args: str):
    command = ["parted", "-s", device, *args]
    try:
        result = run_command(command, check=False)
    except OSError as error:
        raise PartitionTableError(f"Cannot run parted: {error}", command) from error
    if result.returncode != 0:
        raise PartitionTableError(describe_failure(command, result), command)
    return result


def read_partition_table(device: str) -> PartitionTable:
    result = _run_parted(device, "-m", "unit", "B", "print")
    table = parse_parted_machine_output(device, result.stdout or "")
    log.debug(
        "Partition table on {} ({}): {}",
        device,
        table.label or "unknown",
        ", ".join(f"{p.index}:[{p.start},{p.end})" for p in table.partitions) or "empty",
    )
    return table


def list_partitions(device: str) -> list[PartitionRecord]:
    return read_partition_table(device).partitions


def delete_partition(device: str, index: int) -> None:
    log.info(f"Deleting partition {index} on {device}")
    _run_parted(device, "rm", str(index))


def create_partition(device: str, start: int, end: int) -> None:
    """Create a partition covering bytes [start, end).

    parted treats the end position as inclusive, hence ``end - 1``.
    """
    if end <= start:
        raise PartitionTableError(
            f"Refusing to create empty partition on {device}: [{start}, {end})"
        )
    log.info(f"Creating partition on {device}: {start}B - {end - 1}B")
    _run_parted(device, "unit", "B", "mkpart", "primary", f"{start}B", f"{end - 1}B")


def snapshot_indices(device: str) -> set[int]:
    return {partition.index for partition in list_partitions(device)}


def diff_new_index(device: str, before: Iterable[int], after: Iterable[int]) -> int:
    """Return the single index present in ``after`` but not in ``before``."""
    new_indices = set(after) - set(before)
    if len(new_indices) != 1:
        raise NewPartitionIndexError(device, new_indices)
    return new_indices.pop()


def create_partition_tracked(device: str, start: int, end: int) -> int:
    """Create a partition and return the index parted assigned to it."""
    before = snapshot_indices(device)
    create_partition(device, start, end)
    after = snapshot_indices(device)
    index = diff_new_index(device, before, after)
    log.debug(f"New partition on {device} has index {index} (before={sorted(before)})")
    return index


def settle(device: str) -> None:
    """Ask the kernel to re-read the table and wait for udev (best effort)."""
    for command in (
        ["sync"],
        ["partprobe", device],
        ["udevadm", "settle", "--timeout=10"],
    ):
        if not shutil.which(command[0]):
            log.debug("Skipping {}: command not found", command[0])
            continue
        try:
            run_command(command, check=False, log_command=False)
        except (subprocess.CalledProcessError, OSError) as error:
            log.debug("Best-effort command failed ({}): {}", command[0], error)


def wait_for_node(path: str, timeout: float = 5.0, interval: float = 0.5) -> bool:
    """Poll until a partition device node exists."""
    attempts = max(1, int(timeout / interval))
    for _ in range(attempts):
        if os.path.exists(path):  # noqa: PTH110
            return True
        time.sleep(interval)
    log.debug(f"Partition node {path} did not appear after {timeout}s")
    return False
