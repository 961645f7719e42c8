import argparse
import sys
from pathlib import Path

from overlay_separator.__version__ import __version__
from overlay_separator.config import settings
from overlay_separator.logging import LoggerFactory, setup_logging
from overlay_separator.separator import SeparatorOptions, separate
from overlay_separator.storage.compression import detect_compression
from overlay_separator.storage.exceptions import SeparatorError
from overlay_separator.storage.models import CODECS, OVERLAY_FILESYSTEMS
from overlay_separator.storage.sizes import human_size

EXIT_USAGE = 64
EXIT_CODES = {
    "ParseError": 2,
    "ConstraintError": 3,
    "DetectionError": 4,
    "ResourceExhaustion": 5,
    "ToolFailure": 6,
}

AUTO = "auto"


class UsageError(Exception):
    pass


def build_parser():
    parser = argparse.ArgumentParser(
        prog="overlay-separator",
        description=(
            "Shrink the squashfs root partition of a firmware image and append "
            "a formatted overlay partition."
        ),
    )
    parser.add_argument("input", nargs="?", help="Input image (compressed or raw)")
    parser.add_argument("output", nargs="?", help="Output image")
    parser.add_argument(
        "-d",
        "--decompress",
        default=AUTO,
        metavar="PROGRAM",
        help="Decompression program (gzip/xz/bzip2/zstd/raw, default: auto detect)",
    )
    parser.add_argument(
        "-c",
        "--compress",
        metavar="PROGRAM",
        help="Compression program (default: same as decompression)",
    )
    parser.add_argument("-k", "--keep-temp", action="store_true", help="Keep temporary files")
    parser.add_argument("-t", "--temp-file", metavar="FILE", help="Temporary file path")
    parser.add_argument(
        "-s", "--silent", action="store_true", help="Non-interactive, only report errors"
    )
    parser.add_argument(
        "--rom-size",
        metavar="SIZE",
        help="Size of the /rom partition (default: squashfs size rounded up to 8MiB)",
    )
    parser.add_argument("--overlay-size", metavar="SIZE", help="Size of the /overlay partition")
    parser.add_argument(
        "--overlay-filesystem",
        choices=OVERLAY_FILESYSTEMS,
        help="Filesystem for the overlay partition (default: ext4)",
    )
    parser.add_argument("--label", help="Overlay volume label (default: rootfs_data)")
    parser.add_argument("--debug", action="store_true", help="Enable verbose debug output")
    parser.add_argument("--trace", action="store_true", help="Enable trace output")
    parser.add_argument("--log-dir", type=Path, help="Directory for log files")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser


def ask(question, default=None):
    suffix = f" [{default}]" if default else ""
    answer = input(f"{question}{suffix}: ").strip()
    return answer or default


def prompt_missing(args):
    print("Welcome to OpenWrt Overlay Separator!")
    if not args.input:
        args.input = ask("Enter input file path")
    if not args.output:
        args.output = ask("Enter output file path")
    if not args.overlay_size:
        args.overlay_size = ask(
            "Enter overlay size (e.g. 128MiB)", settings.DEFAULT_PROMPT_OVERLAY_SIZE
        )
    if not args.rom_size:
        args.rom_size = ask("Enter ROM size (optional, press Enter to auto)", None)
    if not args.overlay_filesystem:
        args.overlay_filesystem = ask(
            "Choose overlay filesystem (ext4/f2fs)",
            settings.get_setting("overlay_filesystem", settings.DEFAULT_OVERLAY_FILESYSTEM),
        )
    if not args.keep_temp:
        args.keep_temp = (ask("Keep temporary files? (y/N)", "N") or "").lower() == "y"


def resolve_codecs(args, interactive):
    """Return (decompression, compression) program names."""
    decompression = args.decompress
    compression = args.compress
    if decompression == AUTO:
        detected = detect_compression(args.input)
        if interactive:
            choices = "/".join(CODECS)
            if detected is None:
                decompression = ask(
                    "Compression format could not be auto-detected. "
                    f"Choose decompression program ({choices})"
                )
                if not decompression:
                    raise UsageError("No decompression program chosen")
            else:
                decompression = ask(f"Detected compression: {detected}. Use", detected)
            if not compression:
                compression = ask(
                    f"Choose compression program for output ({choices})", decompression
                )
        else:
            if detected is None:
                raise UsageError("Unable to detect compression format")
            decompression = detected
    compression = compression or decompression
    for label, name in (("decompression", decompression), ("compression", compression)):
        if name not in CODECS:
            raise UsageError(f"Unsupported {label} program: {name}")
    return decompression, compression


def build_options(args, interactive):
    if interactive and (not args.input or not args.output or not args.overlay_size):
        prompt_missing(args)
    if not args.input or not args.output:
        raise UsageError("Input and output files are required")
    if not args.overlay_size:
        raise UsageError("--overlay-size is required")
    if not Path(args.input).is_file():
        raise UsageError(f"Input file not found: {args.input}")

    overlay_filesystem = args.overlay_filesystem or settings.get_setting(
        "overlay_filesystem", settings.DEFAULT_OVERLAY_FILESYSTEM
    )
    if overlay_filesystem not in OVERLAY_FILESYSTEMS:
        raise UsageError("Overlay filesystem must be either ext4 or f2fs")

    decompression, compression = resolve_codecs(args, interactive)
    return SeparatorOptions(
        input_path=Path(args.input),
        output_path=Path(args.output),
        overlay_size=args.overlay_size,
        root_size=args.rom_size or None,
        decompression=decompression,
        compression=compression,
        overlay_filesystem=overlay_filesystem,
        overlay_label=args.label
        or settings.get_setting("overlay_label", settings.DEFAULT_OVERLAY_LABEL),
        keep_temp=args.keep_temp or settings.get_bool("keep_temp"),
        temp_file=Path(args.temp_file) if args.temp_file else None,
        temp_dir=settings.get_setting("temp_dir"),
    )


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.overlay_size is None:
        args.overlay_size = settings.get_setting("overlay_size")
    if bool(args.input) != bool(args.output):
        parser.print_usage(sys.stderr)
        return EXIT_USAGE

    setup_logging(
        debug=args.debug,
        trace=args.trace,
        quiet=args.silent,
        log_dir=args.log_dir,
    )
    log = LoggerFactory.for_system()
    interactive = not args.silent and sys.stdin.isatty()

    try:
        options = build_options(args, interactive)
    except UsageError as error:
        log.error(f"Error: {error}")
        parser.print_usage(sys.stderr)
        return EXIT_USAGE

    try:
        ctx = separate(options)
    except SeparatorError as error:
        log.error(f"Error ({error.category}): {error}")
        return EXIT_CODES.get(error.category, 1)
    except KeyboardInterrupt:
        log.error(
            "Interrupted: the working image may be left partially repartitioned; "
            "start again from the original input"
        )
        return 130

    plan = ctx.plan
    log.info(
        "Root partition {} resized to {}, overlay partition {} ({}, {})",
        plan.root_partition_index,
        human_size(plan.root_size),
        ctx.overlay_index,
        human_size(plan.overlay_size),
        options.overlay_filesystem,
    )
    print(f"Done! Output file: {options.output_path}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
