"""Layout planning for the root and overlay partitions.

Pure arithmetic, no device access. Given the current root partition, the
squashfs content size and the requested sizes, ``plan_layout`` returns the
complete target layout or raises before anything is changed.

Rules:
    - Root size defaults to the content size rounded up to 8MiB.
    - Root keeps its start offset; its end is start + root size.
    - The slack above the content, rounded up to 64KiB, is zero-filled.
    - The overlay starts at the root end rounded up to 1MiB and gives up
      its last 4KiB to the overlay filesystem's end-of-volume structures.
    - The image grows by root + overlay - current root allocation when that
      is positive, rounded up to whole 512 byte sectors.
"""

from __future__ import annotations

from typing import Optional

from overlay_separator.storage.exceptions import (
    LayoutFitError,
    OverlaySizeError,
    RootSizeTooSmallError,
)
from overlay_separator.storage.models import LayoutPlan, PartitionRecord
from overlay_separator.storage.sizes import (
    KIB,
    MIB,
    SECTOR_SIZE,
    align_up,
    require_size,
)


ROOT_SIZE_ALIGNMENT = 8 * MIB
TAIL_ZERO_ALIGNMENT = 64 * KIB
OVERLAY_ALIGNMENT = 2048 * SECTOR_SIZE
OVERLAY_RESERVED_TAIL = 4096


def resolve_root_size(content_size: int, requested: Optional[str] = None) -> int:
    if requested is None or str(requested).strip() == "":
        return max(ROOT_SIZE_ALIGNMENT, align_up(content_size, ROOT_SIZE_ALIGNMENT))
    root_size = require_size(requested, "root size")
    if root_size < content_size or root_size == 0:
        raise RootSizeTooSmallError(root_size, content_size)
    return root_size


def resolve_overlay_size(requested: Optional[str]) -> int:
    overlay_size = require_size(requested, "overlay size")
    if overlay_size == 0:
        raise OverlaySizeError(overlay_size, "a zero-length overlay cannot be formatted")
    if overlay_size <= OVERLAY_RESERVED_TAIL:
        raise OverlaySizeError(
            overlay_size, f"must be larger than the {OVERLAY_RESERVED_TAIL} byte reserve"
        )
    return overlay_size


def tail_zero_start(content_size: int) -> int:
    return align_up(content_size, TAIL_ZERO_ALIGNMENT)


def required_growth(root_size: int, overlay_size: int, allocated_size: int) -> int:
    deficit = root_size + overlay_size - allocated_size
    if deficit <= 0:
        return 0
    return align_up(deficit, SECTOR_SIZE)


def overlay_start_for(root_end: int) -> int:
    return align_up(root_end, OVERLAY_ALIGNMENT)


def plan_layout(
    partition: PartitionRecord,
    content_size: int,
    overlay_size: Optional[str],
    root_size: Optional[str] = None,
    image_size: Optional[int] = None,
) -> LayoutPlan:
    """Compute the target layout for ``partition``.

    Args:
        partition: Current record of the squashfs partition
        content_size: Squashfs bytes_used
        overlay_size: Requested overlay size string (required)
        root_size: Requested root size string, None for automatic
        image_size: Current backing file size; enables the fit check

    Raises:
        SizeParseError: A size string is unparseable
        ConstraintError: Sizes violate a layout rule
    """
    overlay_bytes = resolve_overlay_size(overlay_size)
    root_bytes = resolve_root_size(content_size, root_size)

    tail_start = tail_zero_start(content_size)
    root_start = partition.start
    root_end = root_start + root_bytes
    overlay_start = overlay_start_for(root_end)
    overlay_end = overlay_start + overlay_bytes - OVERLAY_RESERVED_TAIL
    growth = required_growth(root_bytes, overlay_bytes, partition.size)

    if image_size is not None and overlay_end > image_size + growth:
        raise LayoutFitError(overlay_end, image_size + growth)

    return LayoutPlan(
        root_partition_index=partition.index,
        root_start=root_start,
        root_end=root_end,
        overlay_start=overlay_start,
        overlay_end=overlay_end,
        required_growth_bytes=growth,
        tail_zero_start=tail_start,
        tail_zero_length=max(0, root_bytes - tail_start),
        original_allocated_size=partition.size,
        content_size_bytes=content_size,
    )
