"""
Read Btrfs runtime statistics from sysfs (/sys/fs/btrfs/<uuid>).

Every value lives in its own small text file. Files that a kernel or a
filesystem does not provide are read as zero, unparsable numbers are read as
zero, and any other I/O failure aborts the read of the whole volume.
"""

import glob
import math
import os
import stat
from collections.abc import Mapping
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field, replace
from types import MappingProxyType

DEFAULT_SYS_MOUNT_POINT = "/sys"

# devices/<name>/size is always reported in 512-byte sectors.
SECTOR_SIZE = 512

BLOCK_GROUP_TYPES = ("data", "metadata", "system")

_MAX_UINT64 = 2**64 - 1


class Error(Exception):
    pass


class ReadError(Error):
    def __init__(self, path, cause):
        super().__init__(f"failed to read {path}: {cause.strerror or cause}")
        self.path = path


@dataclass(frozen=True)
class LayoutUsage:
    total_bytes: int = 0
    used_bytes: int = 0
    ratio: float = 0.0


@dataclass(frozen=True)
class AllocationStats:
    may_use_bytes: int = 0
    pinned_bytes: int = 0
    read_only_bytes: int = 0
    reserved_bytes: int = 0
    used_bytes: int = 0
    disk_used_bytes: int = 0
    disk_total_bytes: int = 0
    flags: int = 0
    total_bytes: int = 0
    total_pinned_bytes: int = 0
    layouts: Mapping[str, LayoutUsage] = field(default_factory=dict)

    def __post_init__(self):
        object.__setattr__(self, "layouts", MappingProxyType(dict(self.layouts)))


@dataclass(frozen=True)
class Allocation:
    global_rsv_reserved: int = 0
    global_rsv_size: int = 0
    data: AllocationStats = field(default_factory=AllocationStats)
    metadata: AllocationStats = field(default_factory=AllocationStats)
    system: AllocationStats = field(default_factory=AllocationStats)


@dataclass(frozen=True)
class Device:
    size: int = 0


@dataclass(frozen=True)
class VolumeStats:
    uuid: str = ""
    label: str = ""
    features: frozenset[str] = frozenset()
    clone_alignment: int = 0
    node_size: int = 0
    sector_size: int = 0
    quota_override: int = 0
    devices: Mapping[str, Device] = field(default_factory=dict)
    allocation: Allocation = field(default_factory=Allocation)

    def __post_init__(self):
        object.__setattr__(self, "features", frozenset(self.features))
        object.__setattr__(self, "devices", MappingProxyType(dict(self.devices)))


# File name of each AllocationStats counter below allocation/<type>/.
ALLOCATION_COUNTERS = (
    ("may_use_bytes", "bytes_may_use"),
    ("pinned_bytes", "bytes_pinned"),
    ("read_only_bytes", "bytes_readonly"),
    ("reserved_bytes", "bytes_reserved"),
    ("used_bytes", "bytes_used"),
    ("disk_used_bytes", "disk_used"),
    ("disk_total_bytes", "disk_total"),
    ("flags", "flags"),
    ("total_bytes", "total_bytes"),
    ("total_pinned_bytes", "total_bytes_pinned"),
)

# Layouts whose ratio does not depend on the number of devices.
FIXED_LAYOUT_RATIOS = {
    "single": 1.0,
    "raid0": 1.0,
    "dup": 2.0,
    "raid1": 2.0,
    "raid10": 2.0,
}

# Parity stripes per layout; the ratio is n / (n - parity).
PARITY_LAYOUTS = {
    "raid5": 1,
    "raid6": 2,
}


def _read_bytes(name):
    with open(name, mode="rb") as f:
        return f.read()


def read_file(root, name):
    """Read a sysfs attribute relative to root, stripped of whitespace.

    A missing file reads as an empty string; any other OSError is raised as
    ReadError.
    """
    path = os.path.join(root, name)
    try:
        raw = _read_bytes(path)
    except FileNotFoundError:
        return ""
    except OSError as e:
        raise ReadError(path, e) from e
    return raw.decode("utf-8", errors="replace").strip()


def parse_uint(value):
    """Parse a base-10 unsigned 64-bit integer, returning 0 when it is not one."""
    if not value.isascii() or not value.isdigit():
        return 0
    n = int(value, 10)
    if n > _MAX_UINT64:
        return 0
    return n


def read_uint(root, name):
    return parse_uint(read_file(root, name))


def list_files(root, name):
    """List the entries of a directory relative to root, in directory order."""
    path = os.path.join(root, name)
    try:
        return os.listdir(path)
    except OSError as e:
        raise ReadError(path, e) from e


def _is_dir(path):
    try:
        st = os.stat(path)
    except FileNotFoundError:
        return False
    except OSError as e:
        raise ReadError(path, e) from e
    return stat.S_ISDIR(st.st_mode)


def layout_ratio(layout, device_count):
    """Return the bytes written to disk per logical byte for a layout.

    Unknown layouts get a ratio of 0. RAID5/6 with too few devices are not
    clamped: the result is whatever float division gives, so 0 devices give
    -0.0, raid6 on 1 device gives -1.0 and as many devices as parity
    stripes gives inf.
    """
    if layout in FIXED_LAYOUT_RATIOS:
        return FIXED_LAYOUT_RATIOS[layout]
    parity = PARITY_LAYOUTS.get(layout)
    if parity is None:
        return 0.0
    n = float(device_count)
    if n == parity:
        # n / 0.0 as IEEE 754 defines it; Python raises instead.
        return math.inf
    return n / (n - parity)


def read_layout(allocation_root, layout, device_count):
    """Read the usage of one layout subdirectory, or None if it is absent."""
    layout_root = os.path.join(allocation_root, layout)
    if not _is_dir(layout_root):
        return None

    return LayoutUsage(
        total_bytes=read_uint(layout_root, "total_bytes"),
        used_bytes=read_uint(layout_root, "used_bytes"),
        ratio=layout_ratio(layout, device_count),
    )


def read_allocation_stats(volume_root, block_group_type, device_count):
    """Read allocation/<block_group_type> and every layout present below it.

    Args:
        volume_root: (string) path to /sys/fs/btrfs/<uuid>.
        block_group_type: (string) one of "data", "metadata" or "system".
        device_count: (int) number of devices of the same volume, used for
            the RAID5/6 ratios.

    Returns:
        AllocationStats
    """
    root = os.path.join(volume_root, "allocation", block_group_type)
    counters = {attr: read_uint(root, name) for attr, name in ALLOCATION_COUNTERS}

    layouts = {}
    for name in list_files(volume_root, os.path.join("allocation", block_group_type)):
        usage = read_layout(root, name, device_count)
        if usage is not None:
            layouts[name] = usage

    return AllocationStats(layouts=layouts, **counters)


def read_devices(volume_root):
    devices = {}
    for name in list_files(volume_root, "devices"):
        sectors = read_uint(volume_root, os.path.join("devices", name, "size"))
        devices[name] = Device(size=sectors * SECTOR_SIZE)
    return devices


def read_stats(volume_root):
    """Read all statistics of a single Btrfs volume.

    Devices are read first; their count feeds the ratio of every RAID5/6
    layout. The uuid is taken from metadata_uuid and left empty when that
    file is missing.

    Raises:
        ReadError: a file or directory could not be read. No partial result
            is returned.
    """
    devices = read_devices(volume_root)
    device_count = len(devices)

    label = read_file(volume_root, "label")
    uuid = read_file(volume_root, "metadata_uuid")
    features = frozenset(list_files(volume_root, "features"))
    clone_alignment = read_uint(volume_root, "clone_alignment")
    node_size = read_uint(volume_root, "nodesize")
    sector_size = read_uint(volume_root, "sectorsize")
    quota_override = read_uint(volume_root, "quota_override")

    allocation = Allocation(
        global_rsv_reserved=read_uint(volume_root, "allocation/global_rsv_reserved"),
        global_rsv_size=read_uint(volume_root, "allocation/global_rsv_size"),
        **{
            block_group_type: read_allocation_stats(volume_root, block_group_type, device_count)
            for block_group_type in BLOCK_GROUP_TYPES
        },
    )

    return VolumeStats(
        uuid=uuid,
        label=label,
        features=features,
        clone_alignment=clone_alignment,
        node_size=node_size,
        sector_size=sector_size,
        quota_override=quota_override,
        devices=devices,
        allocation=allocation,
    )


class BtrfsFS:
    """All Btrfs volumes exposed below a sysfs mount point."""

    def __init__(self, mount_point=DEFAULT_SYS_MOUNT_POINT):
        if not mount_point or not mount_point.strip():
            mount_point = DEFAULT_SYS_MOUNT_POINT
        if not os.path.isdir(mount_point):
            raise Error(f"could not read {mount_point}: not a directory")
        self.mount_point = mount_point

    def path(self, *parts):
        return os.path.join(self.mount_point, *parts)

    def volume_paths(self):
        # "*-*" matches the UUID directories, not "features".
        return sorted(glob.glob(self.path("fs", "btrfs", "*-*")))

    def stats(self, max_workers=None):
        """Read the statistics of every mounted Btrfs volume.

        Returns:
            list of VolumeStats, in the order of volume_paths().
        """
        paths = self.volume_paths()
        if not paths:
            return []

        if max_workers is None:
            max_workers = min(len(paths), os.cpu_count() or 1)

        with ThreadPoolExecutor(max_workers=max_workers) as executor:
            results = list(executor.map(read_stats, paths))

        stats = []
        for path, s in zip(paths, results):
            if not s.uuid:
                s = replace(s, uuid=os.path.basename(path))
            stats.append(s)
        return stats


def get_stats(mount_point=DEFAULT_SYS_MOUNT_POINT):
    return BtrfsFS(mount_point).stats()
