"""
Pytest configuration and shared fixtures for overlay-separator tests.

This module provides common fixtures and utilities used across all test modules.
"""

import sys
from typing import Callable
from unittest.mock import Mock

import pytest
from loguru import logger

from overlay_separator.config import settings
from overlay_separator.storage.models import PartitionRecord
from overlay_separator.storage.sizes import MIB


# ==============================================================================
# Command Output Fixtures
# ==============================================================================


@pytest.fixture
def parted_print_output() -> str:
    """
    Fixture providing ``parted -s -m /dev/loop0 unit B print`` output.

    Typical OpenWrt x86 combined image: 16MiB boot partition and a 100MiB
    squashfs root partition.
    """
    return (
        "BYT;\n"
        "/dev/loop0:260571136B:loopback:512:512:msdos:Loopback device:;\n"
        "1:262144B:17039359B:16777216B:ext2::boot;\n"
        "2:17301504B:122159103B:104857600B:::;\n"
    )


@pytest.fixture
def unsquashfs_output() -> str:
    """Fixture providing ``unsquashfs -s`` output from squashfs-tools 4.5."""
    return (
        "Found a valid SQUASHFS 4:0 superblock on /dev/loop0p2.\n"
        "Creation or last append time Mon Jan  1 00:00:00 2024\n"
        "Filesystem size 4194304 bytes (4096.00 Kbytes / 4.00 Mbytes)\n"
        "Compression xz\n"
        "Block size 262144\n"
    )


@pytest.fixture
def make_result() -> Callable[..., Mock]:
    """Factory for completed-process mocks as returned by run_command."""

    def factory(returncode=0, stdout="", stderr=""):
        return Mock(returncode=returncode, stdout=stdout, stderr=stderr)

    return factory


# ==============================================================================
# Layout Fixtures
# ==============================================================================


@pytest.fixture
def root_partition() -> PartitionRecord:
    """Squashfs root partition at 32MiB with 110MiB allocated."""
    return PartitionRecord(index=2, start=32 * MIB, end=32 * MIB + 110 * MIB)


# ==============================================================================
# Global State Fixtures
# ==============================================================================


@pytest.fixture(autouse=True)
def default_settings():
    """
    Auto-use fixture that isolates tests from a settings file in $HOME.
    """
    saved = settings.settings_store.values
    settings.settings_store.values = dict(settings.DEFAULT_SETTINGS)
    yield settings.settings_store.values
    settings.settings_store.values = saved


@pytest.fixture(autouse=True)
def reset_logging():
    """
    Auto-use fixture that drops sinks added by a test (e.g. setup_logging).
    """
    yield
    logger.remove()
    logger.add(sys.stderr, level="DEBUG")
