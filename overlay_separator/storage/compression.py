"""Compression pipeline bracketing a separation run.

The working image is always a raw disk image. It is produced from the input
by decompression (or an exact copy for ``raw``) and turned into the output by
compression (or used as the output directly for ``raw``).

Codecs:
    gzip    pigz when installed, otherwise gzip
    xz      xz
    bzip2   pbzip2 when installed, otherwise bzip2
    zstd    pzstd when installed, otherwise zstd
    raw     plain copy

Firmware images often carry signature metadata after the compressed stream.
gzip and xz report that with exit status 2, which is a warning, not a failure.
"""

from __future__ import annotations

import os
import shutil
import subprocess
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from overlay_separator.logging import LoggerFactory
from overlay_separator.storage.exceptions import CompressionError
from overlay_separator.storage.models import CODECS


log = LoggerFactory.for_codec()

RAW = "raw"


@dataclass(frozen=True)
class Codec:
    name: str
    tools: tuple[str, ...]
    warning_codes: frozenset[int] = frozenset()

    def executable(self) -> str:
        for tool in self.tools:
            path = shutil.which(tool)
            if path:
                return path
        raise CompressionError(f"{self.name} not found (tried {', '.join(self.tools)})")


CODEC_TABLE = {
    "gzip": Codec("gzip", ("pigz", "gzip"), frozenset({2})),
    "xz": Codec("xz", ("xz",), frozenset({2})),
    "bzip2": Codec("bzip2", ("pbzip2", "bzip2")),
    "zstd": Codec("zstd", ("pzstd", "zstd")),
}

MAGIC_NUMBERS = (
    (b"\x1f\x8b", "gzip"),
    (b"\xfd7zXZ\x00", "xz"),
    (b"BZh", "bzip2"),
    (b"\x28\xb5\x2f\xfd", "zstd"),
)


def detect_compression(path) -> Optional[str]:
    """Guess the codec of a file from its leading magic bytes."""
    with open(path, "rb") as handle:
        header = handle.read(8)
    for magic, name in MAGIC_NUMBERS:
        if header.startswith(magic):
            return name
    return None


def get_codec(name: str) -> Codec:
    if name not in CODECS or name == RAW:
        raise CompressionError(f"Unsupported compression program: {name}")
    return CODEC_TABLE[name]


def _copy(src: Path, dest: Path) -> None:
    log.info(f"Copying {src} to {dest}")
    try:
        shutil.copyfile(src, dest)
    except OSError as error:
        raise CompressionError(f"Cannot copy {src} to {dest}: {error}") from error


def _stream(command: list[str], dest: Path, codec: Codec, action: str) -> None:
    log.debug(f"Running command: {' '.join(command)} > {dest}")
    try:
        with open(dest, "wb") as handle:
            result = subprocess.run(
                command,
                stdout=handle,
                stderr=subprocess.PIPE,
                text=True,
                encoding="utf-8",
                errors="replace",
            )
    except OSError as error:
        raise CompressionError(f"{action.capitalize()} failed: {error}", command) from error
    stderr = (result.stderr or "").strip()
    if result.returncode == 0:
        return
    if result.returncode in codec.warning_codes:
        log.warning(f"{codec.name} {action} reported warnings: {stderr or 'no details'}")
        return
    raise CompressionError(
        f"{action.capitalize()} failed ({' '.join(command)}): {stderr or 'Command failed'}",
        command,
    )


def decompress(src, dest, codec_name: str) -> None:
    src, dest = Path(src), Path(dest)
    if codec_name == RAW:
        _copy(src, dest)
        return
    codec = get_codec(codec_name)
    log.info(f"Decompressing {src} with {codec.name}")
    _stream([codec.executable(), "-dc", str(src)], dest, codec, "decompression")


def compress(src, dest, codec_name: str) -> None:
    src, dest = Path(src), Path(dest)
    if codec_name == RAW:
        _copy(src, dest)
        return
    codec = get_codec(codec_name)
    log.info(f"Compressing {src} to {dest} with {codec.name}")
    _stream([codec.executable(), "-c", str(src)], dest, codec, "compression")


def make_temp_path(temp_dir: Optional[str] = None) -> Path:
    try:
        handle, name = tempfile.mkstemp(
            prefix="overlay-separator-", suffix=".img", dir=temp_dir
        )
    except OSError as error:
        raise CompressionError(
            f"Cannot create temporary file in {temp_dir or tempfile.gettempdir()}: {error}"
        ) from error
    os.close(handle)
    return Path(name)


def prepare_working_image(
    input_path,
    output_path,
    decompression: str,
    compression: str,
    temp_file=None,
    temp_dir: Optional[str] = None,
) -> Path:
    """Produce the raw working image and return its path.

    With raw output the input is unpacked straight into the output file,
    which then becomes the working image. Otherwise a temporary file is used,
    and removed again when it cannot be filled.
    """
    if compression == RAW:
        working = Path(output_path)
    else:
        working = Path(temp_file) if temp_file else make_temp_path(temp_dir)
    try:
        decompress(input_path, working, decompression)
        if not os.access(working, os.W_OK):
            raise CompressionError(f"Cannot write to working file: {working}")
    except CompressionError:
        if compression != RAW:
            discard_working_image(working)
        raise
    return working


def finalize_output(working, output_path, compression: str, keep_temp: bool = False) -> Path:
    """Compress the working image into the output and drop the temp file."""
    working, output_path = Path(working), Path(output_path)
    if compression == RAW:
        log.info(f"Output file ready (no compression): {output_path}")
        return output_path
    compress(working, output_path, compression)
    if not keep_temp:
        discard_working_image(working)
    return output_path


def discard_working_image(working) -> None:
    try:
        Path(working).unlink()
    except FileNotFoundError:
        return
    except OSError as error:
        log.warning(f"Could not remove temporary file {working}: {error}")
        return
    log.debug(f"Removed temporary file {working}")
