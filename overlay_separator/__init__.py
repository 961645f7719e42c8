"""Split a squashfs firmware image into a compact root and a writable overlay."""

from overlay_separator.__version__ import __version__

__all__ = ["__version__"]
