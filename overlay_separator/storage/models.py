"""Data models for image layout operations."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional


OVERLAY_FILESYSTEMS = ("ext4", "f2fs")
CODECS = ("gzip", "xz", "bzip2", "zstd", "raw")


@dataclass(frozen=True)
class PartitionRecord:
    """One partition table entry in byte offsets.

    ``end`` is exclusive, so ``size == end - start``.
    """

    index: int
    start: int
    end: int

    def __post_init__(self) -> None:
        if self.index < 1:
            raise ValueError(f"Partition index must be positive: {self.index}")
        if self.end <= self.start:
            raise ValueError(
                f"Partition {self.index} ends at {self.end}, before its start {self.start}"
            )

    @property
    def size(self) -> int:
        return self.end - self.start


@dataclass(frozen=True)
class PartitionTable:
    device: str
    sector_size: int
    label: Optional[str]
    partitions: list[PartitionRecord] = field(default_factory=list)

    def get(self, index: int) -> Optional[PartitionRecord]:
        for partition in self.partitions:
            if partition.index == index:
                return partition
        return None

    def indices(self) -> set[int]:
        return {partition.index for partition in self.partitions}


@dataclass(frozen=True)
class FilesystemReport:
    partition_index: int
    partition_path: str
    content_size_bytes: int


@dataclass(frozen=True)
class LayoutPlan:
    """Target partition layout computed once per run.

    All offsets are absolute byte positions on the image; ends are exclusive.
    """

    root_partition_index: int
    root_start: int
    root_end: int
    overlay_start: int
    overlay_end: int
    required_growth_bytes: int
    tail_zero_start: int
    tail_zero_length: int
    original_allocated_size: int
    content_size_bytes: int

    @property
    def root_size(self) -> int:
        return self.root_end - self.root_start

    @property
    def overlay_size(self) -> int:
        return self.overlay_end - self.overlay_start

    @property
    def tail_zero_range(self) -> tuple[int, int]:
        """Absolute (offset, length) of the slack zeroed inside the root partition."""
        return (self.root_start + self.tail_zero_start, self.tail_zero_length)

    @property
    def needs_growth(self) -> bool:
        return self.required_growth_bytes > 0


@dataclass(frozen=True)
class LoopBinding:
    device: str
    backing_file: Path
