"""
Tests for the separation engine.

The partition table, loop devices and squashfs probing are replaced by an
in-memory disk so that the real attach/detach scoping, index tracking and
layout arithmetic run end to end.
"""

import itertools
import os
from unittest.mock import Mock

import pytest

from overlay_separator import separator
from overlay_separator.separator import (
    RunContext,
    SeparatorOptions,
    repartition,
    required_tools,
    separate,
)
from overlay_separator.storage import compression, loop, partition_table, squashfs
from overlay_separator.storage.exceptions import (
    CompressionError,
    DetectionError,
    FormatOperationError,
    LoopDetachError,
    MissingToolError,
    NoFreeLoopDeviceError,
    OverlaySizeError,
    PartitionTableError,
    RootSizeTooSmallError,
    SizeParseError,
    UnsupportedFilesystemError,
)
from overlay_separator.storage.models import (
    FilesystemReport,
    PartitionRecord,
    PartitionTable,
)
from overlay_separator.storage.sizes import MIB


ROOT_START = 32 * MIB


class FakeDisk:
    """Partition table of one image, shared by every loop binding of it."""

    def __init__(self, partitions):
        self.partitions = {p.index: p for p in partitions}
        self.calls = []

    def read_partition_table(self, device):
        records = sorted(self.partitions.values(), key=lambda p: p.index)
        return PartitionTable(device, 512, "msdos", records)

    def delete_partition(self, device, index):
        self.calls.append(("rm", index))
        del self.partitions[index]

    def create_partition(self, device, start, end):
        # msdos labels hand out the lowest free primary slot
        index = next(i for i in itertools.count(1) if i not in self.partitions)
        self.calls.append(("mkpart", start, end))
        self.partitions[index] = PartitionRecord(index, start, end)


class Harness:
    def __init__(self, monkeypatch, tmp_path, partitions, content_size, squashfs_index=2):
        self.disk = FakeDisk(partitions)
        self.devices = itertools.cycle(["/dev/loop0", "/dev/loop1"])
        self.attach = Mock()
        self.detach = Mock()
        self.grow_image = Mock(side_effect=lambda path, nbytes: nbytes)
        self.zero_tail = Mock(side_effect=self._zero_tail)
        self.format_overlay = Mock(side_effect=self._format)

        end = max(p.end for p in partitions)
        self.image = tmp_path / "work.img"
        self.image.touch()
        os.truncate(self.image, end)

        monkeypatch.setattr(loop, "find_free_device", lambda: next(self.devices))
        monkeypatch.setattr(loop, "attach", self.attach)
        monkeypatch.setattr(loop, "detach", self.detach)
        monkeypatch.setattr(loop, "settle", lambda: None)
        monkeypatch.setattr(partition_table, "read_partition_table", self.disk.read_partition_table)
        monkeypatch.setattr(partition_table, "delete_partition", self.disk.delete_partition)
        monkeypatch.setattr(partition_table, "create_partition", self.disk.create_partition)
        monkeypatch.setattr(partition_table, "settle", lambda device: None)
        monkeypatch.setattr(partition_table, "wait_for_node", lambda path: True)
        monkeypatch.setattr(
            squashfs,
            "probe",
            lambda path, index=0: (
                FilesystemReport(index, path, content_size) if index == squashfs_index else None
            ),
        )
        monkeypatch.setattr(separator, "grow_image", self.grow_image)
        monkeypatch.setattr(separator, "zero_tail", self.zero_tail)
        monkeypatch.setattr(separator, "format_overlay", self.format_overlay)

    def _zero_tail(self, device, partition_start, tail_start, allocated_size):
        self.disk.calls.append(("zero", partition_start + tail_start, allocated_size - tail_start))
        return allocated_size - tail_start

    def _format(self, path, filesystem, label):
        self.disk.calls.append(("format", path))

    def context(self, **options):
        options.setdefault("overlay_size", "128MiB")
        return RunContext(
            options=SeparatorOptions(
                input_path=self.image, output_path=self.image, **options
            ),
            working_image=self.image,
        )

    @property
    def detached(self):
        return [call.args[0] for call in self.detach.call_args_list]


def openwrt_partitions(root_allocated):
    return [
        PartitionRecord(1, 512 * 512, 512 * 512 + 16 * MIB),
        PartitionRecord(2, ROOT_START, ROOT_START + root_allocated),
    ]


class TestRepartitionWithGrowth:
    """100MiB squashfs in a 110MiB partition, 128MiB overlay requested."""

    @pytest.fixture
    def harness(self, monkeypatch, tmp_path):
        return Harness(monkeypatch, tmp_path, openwrt_partitions(110 * MIB), 100 * MIB)

    def test_plan(self, harness):
        ctx = harness.context()

        plan = repartition(ctx)

        assert plan.root_size == 104 * MIB
        assert plan.required_growth_bytes == 122 * MIB
        assert ctx.grown_bytes == 122 * MIB

    def test_reattaches_exactly_once(self, harness):
        ctx = harness.context()

        repartition(ctx)

        assert ctx.attach_count == 2
        assert harness.attach.call_count == 2
        assert harness.detached == ["/dev/loop0", "/dev/loop1"]
        harness.grow_image.assert_called_once_with(harness.image, 122 * MIB)

    def test_final_layout(self, harness):
        ctx = harness.context()

        plan = repartition(ctx)

        parts = harness.disk.partitions
        assert parts[1] == PartitionRecord(1, 512 * 512, 512 * 512 + 16 * MIB)
        assert parts[2] == PartitionRecord(2, ROOT_START, ROOT_START + 104 * MIB)
        assert parts[3] == PartitionRecord(3, plan.overlay_start, plan.overlay_end)
        assert parts[3].start >= parts[2].end
        assert ctx.overlay_index == 3
        assert ctx.overlay_partition == "/dev/loop1p3"

    def test_step_order(self, harness):
        ctx = harness.context()

        plan = repartition(ctx)

        assert harness.disk.calls == [
            ("rm", 2),
            ("mkpart", ROOT_START, ROOT_START + 104 * MIB),
            ("zero", ROOT_START + 100 * MIB, 4 * MIB),
            ("mkpart", plan.overlay_start, plan.overlay_end),
            ("format", "/dev/loop1p3"),
        ]
        harness.format_overlay.assert_called_once_with("/dev/loop1p3", "ext4", "rootfs_data")

    def test_root_moved_after_growth(self, harness):
        def grow_and_move(path, nbytes):
            harness.disk.partitions[2] = PartitionRecord(
                2, ROOT_START + MIB, ROOT_START + 111 * MIB
            )
            return nbytes

        harness.grow_image.side_effect = grow_and_move

        with pytest.raises(DetectionError):
            repartition(harness.context())

        assert harness.detached == ["/dev/loop0", "/dev/loop1"]
        assert harness.disk.calls == []


class TestRepartitionWithoutGrowth:
    @pytest.fixture
    def harness(self, monkeypatch, tmp_path):
        return Harness(monkeypatch, tmp_path, openwrt_partitions(300 * MIB), 100 * MIB)

    def test_single_binding(self, harness):
        ctx = harness.context(overlay_filesystem="f2fs", overlay_label="data")

        plan = repartition(ctx)

        assert not plan.needs_growth
        assert ctx.attach_count == 1
        assert harness.detached == ["/dev/loop0"]
        harness.grow_image.assert_not_called()
        harness.format_overlay.assert_called_once_with("/dev/loop0p3", "f2fs", "data")

    def test_zeroes_slack_of_recreated_root(self, harness):
        ctx = harness.context()

        repartition(ctx)

        assert ctx.zeroed_bytes == 4 * MIB

    def test_root_recreated_under_other_index(self, monkeypatch, tmp_path):
        """Test a lone root partition 2 that parted recreates as 1."""
        harness = Harness(
            monkeypatch,
            tmp_path,
            [PartitionRecord(2, ROOT_START, ROOT_START + 300 * MIB)],
            100 * MIB,
        )
        ctx = harness.context()

        repartition(ctx)

        assert harness.disk.partitions[1].end == ROOT_START + 104 * MIB
        assert ctx.overlay_index == 2
        harness.format_overlay.assert_called_once_with("/dev/loop0p2", "ext4", "rootfs_data")


class TestRepartitionFailures:
    """Every failure leaves no loop device attached."""

    def test_root_too_small_changes_nothing(self, monkeypatch, tmp_path):
        harness = Harness(monkeypatch, tmp_path, openwrt_partitions(110 * MIB), 50 * MIB)

        with pytest.raises(RootSizeTooSmallError):
            repartition(harness.context(root_size="40MiB"))

        assert harness.disk.calls == []
        assert harness.detached == ["/dev/loop0"]

    def test_no_squashfs(self, monkeypatch, tmp_path):
        harness = Harness(
            monkeypatch, tmp_path, openwrt_partitions(110 * MIB), 100 * MIB, squashfs_index=9
        )

        with pytest.raises(DetectionError):
            repartition(harness.context())

        assert harness.detached == ["/dev/loop0"]

    def test_empty_table(self, monkeypatch, tmp_path):
        harness = Harness(monkeypatch, tmp_path, openwrt_partitions(110 * MIB), 100 * MIB)
        harness.disk.partitions.clear()

        with pytest.raises(DetectionError):
            repartition(harness.context())

        assert harness.detached == ["/dev/loop0"]

    def test_format_failure_detaches(self, monkeypatch, tmp_path):
        harness = Harness(monkeypatch, tmp_path, openwrt_partitions(300 * MIB), 100 * MIB)
        harness.format_overlay.side_effect = FormatOperationError("mkfs.ext4 failed")

        with pytest.raises(FormatOperationError):
            repartition(harness.context())

        assert harness.detached == ["/dev/loop0"]

    def test_detach_failure_keeps_original_error(self, monkeypatch, tmp_path):
        harness = Harness(monkeypatch, tmp_path, openwrt_partitions(300 * MIB), 100 * MIB)
        harness.format_overlay.side_effect = FormatOperationError("mkfs.ext4 failed")
        harness.detach.side_effect = LoopDetachError("busy")

        with pytest.raises(FormatOperationError):
            repartition(harness.context())

    def test_no_free_device_after_growth(self, monkeypatch, tmp_path):
        """Test the grown image is not left bound when re-attaching fails."""
        harness = Harness(monkeypatch, tmp_path, openwrt_partitions(110 * MIB), 100 * MIB)
        monkeypatch.setattr(loop, "find_free_device", Mock(side_effect=["/dev/loop0", None]))

        with pytest.raises(NoFreeLoopDeviceError):
            repartition(harness.context())

        assert harness.attach.call_count == 1
        assert harness.detached == ["/dev/loop0"]
        harness.grow_image.assert_called_once_with(harness.image, 122 * MIB)
        assert harness.disk.calls == []

    def test_missing_overlay_node(self, monkeypatch, tmp_path):
        harness = Harness(monkeypatch, tmp_path, openwrt_partitions(300 * MIB), 100 * MIB)
        monkeypatch.setattr(partition_table, "wait_for_node", lambda path: False)

        with pytest.raises(PartitionTableError):
            repartition(harness.context())

        harness.format_overlay.assert_not_called()
        assert harness.detached == ["/dev/loop0"]


class TestSeparate:
    """Tests for separate(): validation and the compression bracket."""

    @pytest.fixture
    def input_image(self, tmp_path):
        path = tmp_path / "openwrt.img"
        path.write_bytes(b"\x00" * 4096)
        return path

    @pytest.fixture
    def engine(self, monkeypatch):
        mocks = Mock()
        monkeypatch.setattr(separator, "check_required_tools", mocks.check_required_tools)
        monkeypatch.setattr(separator, "repartition", mocks.repartition)
        return mocks

    @pytest.mark.parametrize(
        "overrides,error",
        [
            ({"overlay_size": "0"}, OverlaySizeError),
            ({"overlay_size": "lots"}, SizeParseError),
            ({"root_size": "abc"}, SizeParseError),
            ({"decompression": "lzma"}, CompressionError),
            ({"compression": "lz4"}, CompressionError),
            ({"overlay_filesystem": "btrfs"}, UnsupportedFilesystemError),
        ],
    )
    def test_invalid_options_fail_before_work(
        self, engine, input_image, tmp_path, overrides, error
    ):
        overrides = dict(overrides)
        options = SeparatorOptions(
            input_path=input_image,
            output_path=tmp_path / "out.img",
            overlay_size=overrides.pop("overlay_size", "128MiB"),
            **overrides,
        )

        with pytest.raises(error):
            separate(options)

        engine.check_required_tools.assert_not_called()
        assert not (tmp_path / "out.img").exists()

    def test_unsupported_filesystem_is_constraint(self, engine, input_image, tmp_path):
        options = SeparatorOptions(
            input_image, tmp_path / "out.img", "128MiB", overlay_filesystem="btrfs"
        )

        with pytest.raises(UnsupportedFilesystemError) as excinfo:
            separate(options)

        assert excinfo.value.category == "ConstraintError"
        assert excinfo.value.filesystem == "btrfs"

    def test_missing_tools(self, engine, input_image, tmp_path):
        engine.check_required_tools.side_effect = MissingToolError(["parted"])

        with pytest.raises(MissingToolError):
            separate(SeparatorOptions(input_image, tmp_path / "out.img", "128MiB"))

        engine.repartition.assert_not_called()

    def test_raw_output_is_the_working_image(self, engine, input_image, tmp_path):
        output = tmp_path / "out.img"

        ctx = separate(SeparatorOptions(input_image, output, "128MiB"))

        assert ctx.working_image == output
        assert output.read_bytes() == input_image.read_bytes()
        engine.repartition.assert_called_once_with(ctx)

    def test_compressed_output(self, engine, input_image, tmp_path, monkeypatch):
        compress = Mock(side_effect=lambda src, dest, name: dest.write_bytes(b"packed"))
        monkeypatch.setattr(compression, "compress", compress)
        temp = tmp_path / "scratch.img"
        output = tmp_path / "out.img.gz"

        ctx = separate(
            SeparatorOptions(input_image, output, "128MiB", compression="gzip", temp_file=temp)
        )

        assert ctx.working_image == temp
        assert output.read_bytes() == b"packed"
        assert not temp.exists()

    def test_failure_discards_temp_file(self, engine, input_image, tmp_path):
        engine.repartition.side_effect = PartitionTableError("parted failed")
        temp = tmp_path / "scratch.img"
        output = tmp_path / "out.img.gz"

        with pytest.raises(PartitionTableError):
            separate(
                SeparatorOptions(
                    input_image, output, "128MiB", compression="gzip", temp_file=temp
                )
            )

        assert not temp.exists()
        assert not output.exists()

    def test_failure_keeps_temp_file_when_asked(self, engine, input_image, tmp_path):
        engine.repartition.side_effect = PartitionTableError("parted failed")
        temp = tmp_path / "scratch.img"

        with pytest.raises(PartitionTableError):
            separate(
                SeparatorOptions(
                    input_image,
                    tmp_path / "out.img.gz",
                    "128MiB",
                    compression="gzip",
                    temp_file=temp,
                    keep_temp=True,
                )
            )

        assert temp.exists()

    def test_failed_unpack_leaves_no_temp_file(
        self, engine, input_image, tmp_path, monkeypatch
    ):
        """Test a corrupt gzip input leaves nothing in the temp directory."""
        monkeypatch.setattr(compression.shutil, "which", lambda tool: f"/usr/bin/{tool}")
        monkeypatch.setattr(
            compression.subprocess,
            "run",
            Mock(return_value=Mock(returncode=1, stderr="unexpected end of file")),
        )
        scratch = tmp_path / "scratch"
        scratch.mkdir()

        with pytest.raises(CompressionError):
            separate(
                SeparatorOptions(
                    input_image,
                    tmp_path / "out.img.gz",
                    "128MiB",
                    decompression="gzip",
                    temp_dir=str(scratch),
                )
            )

        assert list(scratch.iterdir()) == []
        engine.repartition.assert_not_called()

    def test_missing_temp_dir(self, engine, input_image, tmp_path):
        with pytest.raises(CompressionError):
            separate(
                SeparatorOptions(
                    input_image,
                    tmp_path / "out.img.gz",
                    "128MiB",
                    compression="gzip",
                    temp_dir=str(tmp_path / "no-such-dir"),
                )
            )

        engine.repartition.assert_not_called()


def test_required_tools():
    options = SeparatorOptions("in", "out", "128MiB", overlay_filesystem="f2fs")

    assert required_tools(options) == ["losetup", "parted", "unsquashfs", "mkfs.f2fs"]
