"""Custom exceptions for image separation operations.

Every failure that aborts a run is one of these classes. Each carries a
``category`` name which the command line reports together with the message
and maps to an exit code.

Exception Hierarchy:
    SeparatorError (base)
        ├── SizeParseError                  (ParseError)
        ├── DetectionError                  (DetectionError)
        ├── ConstraintError                 (ConstraintError)
        │   ├── RootSizeTooSmallError
        │   ├── OverlaySizeError
        │   ├── UnsupportedFilesystemError
        │   └── LayoutFitError
        ├── ResourceExhaustionError         (ResourceExhaustion)
        │   └── NoFreeLoopDeviceError
        └── ToolFailureError                (ToolFailure)
            ├── MissingToolError
            ├── LoopAttachError
            ├── LoopDetachError
            ├── PartitionTableError
            │   └── NewPartitionIndexError
            ├── ImageResizeError
            ├── TailZeroError
            ├── FormatOperationError
            └── CompressionError

Usage:
    from overlay_separator.storage.exceptions import RootSizeTooSmallError

    if root_size < content_size:
        raise RootSizeTooSmallError(root_size, content_size)
"""

from __future__ import annotations

from typing import Iterable, Optional


class SeparatorError(Exception):
    """Base exception for all separation failures."""

    category = "Error"


class SizeParseError(SeparatorError):
    """A size string could not be converted to a byte count."""

    category = "ParseError"

    def __init__(self, field: str, value: Optional[str]):
        self.field = field
        self.value = value
        super().__init__(f"Invalid {field}: {value!r}")


class DetectionError(SeparatorError):
    """No usable squashfs partition was found in the image."""

    category = "DetectionError"

    def __init__(self, message: str, device: Optional[str] = None):
        self.device = device
        super().__init__(message)


class ConstraintError(SeparatorError):
    """Requested layout violates a sizing rule."""

    category = "ConstraintError"


class RootSizeTooSmallError(ConstraintError):
    """Requested root size cannot hold the filesystem content."""

    def __init__(self, root_size: int, content_size: int):
        self.root_size = root_size
        self.content_size = content_size
        super().__init__(
            f"Requested root size ({root_size} bytes) is smaller than "
            f"filesystem content ({content_size} bytes)"
        )


class OverlaySizeError(ConstraintError):
    """Overlay size is too small to create a partition."""

    def __init__(self, overlay_size: int, reason: str = ""):
        self.overlay_size = overlay_size
        self.reason = reason
        msg = f"Overlay size {overlay_size} bytes is not usable"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)


class UnsupportedFilesystemError(ConstraintError):
    """Requested overlay filesystem is not one that can be created."""

    def __init__(self, filesystem: str, supported: Iterable[str]):
        self.filesystem = filesystem
        self.supported = tuple(supported)
        super().__init__(
            f"Overlay filesystem must be one of {', '.join(self.supported)}, "
            f"not {filesystem!r}"
        )


class LayoutFitError(ConstraintError):
    """Planned partitions do not fit inside the grown image."""

    def __init__(self, overlay_end: int, image_size: int):
        self.overlay_end = overlay_end
        self.image_size = image_size
        super().__init__(
            f"Overlay partition would end at byte {overlay_end} but the image "
            f"is only {image_size} bytes"
        )


class ResourceExhaustionError(SeparatorError):
    """A finite system resource is not available."""

    category = "ResourceExhaustion"


class NoFreeLoopDeviceError(ResourceExhaustionError):
    """No unused loop device could be found."""

    def __init__(self, image_path: str):
        self.image_path = image_path
        super().__init__(f"No unused loop device available for {image_path}")


class ToolFailureError(SeparatorError):
    """An external tool reported failure."""

    category = "ToolFailure"

    def __init__(self, message: str, command: Optional[Iterable[str]] = None):
        self.command = list(command) if command is not None else None
        super().__init__(message)


class MissingToolError(ToolFailureError):
    """Required executables are not installed."""

    def __init__(self, tools: Iterable[str]):
        self.tools = sorted(tools)
        super().__init__(f"Required tools not found: {', '.join(self.tools)}")


class LoopAttachError(ToolFailureError):
    """losetup could not bind the image to a loop device."""


class LoopDetachError(ToolFailureError):
    """losetup could not release a loop device."""


class PartitionTableError(ToolFailureError):
    """Reading or changing the partition table failed."""


class NewPartitionIndexError(PartitionTableError):
    """The index of a freshly created partition is ambiguous."""

    def __init__(self, device: str, new_indices: Iterable[int]):
        self.device = device
        self.new_indices = sorted(new_indices)
        if self.new_indices:
            detail = f"several new partitions appeared: {self.new_indices}"
        else:
            detail = "no new partition appeared"
        super().__init__(f"Cannot identify new partition on {device}: {detail}")


class ImageResizeError(ToolFailureError):
    """Growing the backing image file failed."""


class TailZeroError(ToolFailureError):
    """Zero-filling the root partition tail failed."""


class FormatOperationError(ToolFailureError):
    """Formatting the overlay partition failed."""

    def __init__(self, message: str, device: Optional[str] = None, command=None):
        self.device = device
        super().__init__(message, command)


class CompressionError(ToolFailureError):
    """A compression or decompression step failed."""
