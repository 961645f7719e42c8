"""Image separation engine.

Turns a firmware image with a squashfs root into one with a right-sized root
partition followed by a formatted overlay partition.

Pipeline:
    1. Decompress (or copy) the input into the working image
    2. Attach the working image to a loop device
    3. Locate the first squashfs partition and measure its content
    4. Plan the new layout
    5. If the image is too small: detach, grow the file, attach again
    6. Recreate the root partition at its old start with the new end
    7. Zero the root partition slack above the squashfs content
    8. Create the overlay partition and find the index parted gave it
    9. Format the overlay partition
    10. Detach and compress the working image into the output

All state of a run lives in a RunContext passed from step to step. Every
loop binding is scoped by ``attached_image`` so that no error path can leak
a loop device.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Optional

from overlay_separator.config.settings import (
    DEFAULT_OVERLAY_FILESYSTEM,
    DEFAULT_OVERLAY_LABEL,
)
from overlay_separator.logging import LoggerFactory, operation_context
from overlay_separator.storage import compression, loop, partition_table, squashfs
from overlay_separator.storage.commands import check_required_tools
from overlay_separator.storage.exceptions import (
    CompressionError,
    DetectionError,
    PartitionTableError,
    UnsupportedFilesystemError,
)
from overlay_separator.storage.format import FORMAT_TOOLS, format_overlay
from overlay_separator.storage.image import grow_image, zero_tail
from overlay_separator.storage.models import (
    CODECS,
    OVERLAY_FILESYSTEMS,
    FilesystemReport,
    LayoutPlan,
    LoopBinding,
    PartitionRecord,
    PartitionTable,
)
from overlay_separator.storage.planner import (
    plan_layout,
    resolve_overlay_size,
    resolve_root_size,
)
from overlay_separator.storage.sizes import human_size

if TYPE_CHECKING:
    from loguru import Logger


ENGINE_TOOLS = ("losetup", "parted", "unsquashfs")


@dataclass
class SeparatorOptions:
    input_path: Path
    output_path: Path
    overlay_size: str
    root_size: Optional[str] = None
    decompression: str = compression.RAW
    compression: Optional[str] = None
    overlay_filesystem: str = DEFAULT_OVERLAY_FILESYSTEM
    overlay_label: str = DEFAULT_OVERLAY_LABEL
    keep_temp: bool = False
    temp_file: Optional[Path] = None
    temp_dir: Optional[str] = None

    @property
    def output_compression(self) -> str:
        return self.compression or self.decompression


@dataclass
class RunContext:
    """Mutable state of one separation run."""

    options: SeparatorOptions
    log: Logger = field(default_factory=LoggerFactory.for_run)
    working_image: Optional[Path] = None
    table: Optional[PartitionTable] = None
    root_partition: Optional[PartitionRecord] = None
    report: Optional[FilesystemReport] = None
    plan: Optional[LayoutPlan] = None
    attach_count: int = 0
    grown_bytes: int = 0
    zeroed_bytes: int = 0
    overlay_index: Optional[int] = None
    overlay_partition: Optional[str] = None


def validate_options(options: SeparatorOptions) -> None:
    """Reject bad options before any file or device is touched.

    Size strings are parsed here so that a ParseError or a zero overlay
    surfaces before decompression starts. The root size is checked against
    the content size later, once the content size is known.
    """
    for name in (options.decompression, options.output_compression):
        if name not in CODECS:
            raise CompressionError(f"Unsupported compression program: {name}")
    if options.overlay_filesystem not in OVERLAY_FILESYSTEMS:
        raise UnsupportedFilesystemError(
            options.overlay_filesystem, OVERLAY_FILESYSTEMS
        )
    resolve_overlay_size(options.overlay_size)
    if options.root_size:
        resolve_root_size(0, options.root_size)


def required_tools(options: SeparatorOptions) -> list[str]:
    return [*ENGINE_TOOLS, FORMAT_TOOLS[options.overlay_filesystem]]


def inspect_image(ctx: RunContext, binding: LoopBinding) -> LayoutPlan:
    """Locate the squashfs partition on the bound image and plan the layout."""
    options = ctx.options
    ctx.table = partition_table.read_partition_table(binding.device)
    if not ctx.table.partitions:
        raise DetectionError(
            f"No partitions found on {binding.device}", device=binding.device
        )
    ctx.root_partition, ctx.report = squashfs.find_squashfs_partition(
        binding.device, ctx.table.partitions
    )
    ctx.plan = plan_layout(
        ctx.root_partition,
        ctx.report.content_size_bytes,
        options.overlay_size,
        options.root_size,
        image_size=binding.backing_file.stat().st_size,
    )
    plan = ctx.plan
    ctx.log.info(
        "Planned layout: root p{} [{}, {}) {}, overlay [{}, {}) {}, growth {} bytes",
        plan.root_partition_index,
        plan.root_start,
        plan.root_end,
        human_size(plan.root_size),
        plan.overlay_start,
        plan.overlay_end,
        human_size(plan.overlay_size),
        plan.required_growth_bytes,
    )
    return plan


def apply_layout(ctx: RunContext, binding: LoopBinding) -> None:
    """Rewrite the partition table of the bound image according to ctx.plan."""
    plan = ctx.plan
    options = ctx.options
    device = binding.device

    # Offsets may only be trusted from a table read on this binding.
    table = partition_table.read_partition_table(device)
    current = table.get(plan.root_partition_index)
    if current is None or current.start != plan.root_start:
        raise DetectionError(
            f"Partition {plan.root_partition_index} on {device} no longer starts at "
            f"byte {plan.root_start}",
            device=device,
        )
    ctx.table = table

    partition_table.delete_partition(device, plan.root_partition_index)
    root_index = partition_table.create_partition_tracked(
        device, plan.root_start, plan.root_end
    )
    if root_index != plan.root_partition_index:
        ctx.log.warning(
            f"Root partition was recreated as index {root_index} "
            f"instead of {plan.root_partition_index}"
        )
    partition_table.settle(device)

    root = partition_table.read_partition_table(device).get(root_index)
    if root is None:
        raise PartitionTableError(f"Recreated root partition {root_index} is missing on {device}")
    ctx.zeroed_bytes = zero_tail(device, root.start, plan.tail_zero_start, root.size)

    ctx.overlay_index = partition_table.create_partition_tracked(
        device, plan.overlay_start, plan.overlay_end
    )
    partition_table.settle(device)
    ctx.overlay_partition = partition_table.partition_path(device, ctx.overlay_index)
    if not partition_table.wait_for_node(ctx.overlay_partition):
        raise PartitionTableError(
            f"Overlay partition node {ctx.overlay_partition} did not appear"
        )
    format_overlay(ctx.overlay_partition, options.overlay_filesystem, options.overlay_label)


def _attached(ctx: RunContext):
    ctx.attach_count += 1
    return loop.attached_image(ctx.working_image)


def repartition(ctx: RunContext) -> LayoutPlan:
    """Plan and apply the new layout on ctx.working_image.

    Uses a single loop binding when the image is large enough. Otherwise the
    binding is released, the file grown and one new binding acquired.
    """
    with _attached(ctx) as binding:
        plan = inspect_image(ctx, binding)
        if not plan.needs_growth:
            apply_layout(ctx, binding)
            return plan

    ctx.grown_bytes = grow_image(ctx.working_image, plan.required_growth_bytes)
    with _attached(ctx) as binding:
        apply_layout(ctx, binding)
    return plan


def separate(options: SeparatorOptions) -> RunContext:
    """Run the whole pipeline and return the finished run context."""
    validate_options(options)
    check_required_tools(required_tools(options))

    ctx = RunContext(options=options)
    output_codec = options.output_compression
    with operation_context(
        "separate",
        input=str(options.input_path),
        output=str(options.output_path),
    ) as log:
        ctx.log = log
        ctx.working_image = compression.prepare_working_image(
            options.input_path,
            options.output_path,
            options.decompression,
            output_codec,
            temp_file=options.temp_file,
            temp_dir=options.temp_dir,
        )
        try:
            repartition(ctx)
            compression.finalize_output(
                ctx.working_image,
                options.output_path,
                output_codec,
                keep_temp=options.keep_temp,
            )
        except Exception:
            if output_codec != compression.RAW and not options.keep_temp:
                compression.discard_working_image(ctx.working_image)
            raise
    return ctx
