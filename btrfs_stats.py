#!/usr/bin/env python3

# Collect btrfs filesystem statistics from sysfs (/sys/fs/btrfs). Works as an
# unprivileged user and does not need btrfs-progs.
#
# Consider using node_exporter's built-in btrfs collector instead of this script.

import argparse
import os
import sys

from prometheus_client import CollectorRegistry, Gauge, generate_latest, write_to_textfile

import btrfs_sysfs

__doc__ = "Expose btrfs sysfs statistics as Prometheus metrics."

NAMESPACE = "node_btrfs"

VOLUME_METRICS = (
    ("node_size_bytes", "node_size", "Size of a btree node in bytes"),
    ("sector_size_bytes", "sector_size", "Minimum data block allocation unit in bytes"),
    ("clone_alignment_bytes", "clone_alignment", "Alignment of clone and dedupe ranges in bytes"),
    ("quota_override", "quota_override", "Whether quota limits are overridden"),
)

ALLOCATION_METRICS = (
    ("global_rsv_size_bytes", "global_rsv_size", "Size of global reserve"),
    ("global_rsv_reserved_bytes", "global_rsv_reserved", "Amount of global reserve in use"),
)

# Metric name suffix to AllocationStats attribute, per block group type.
metric_to_attribute = {
    'size_bytes': 'total_bytes',
    'used_bytes': 'used_bytes',
    'reserved_bytes': 'reserved_bytes',
    'pinned_bytes': 'pinned_bytes',
    'may_use_bytes': 'may_use_bytes',
    'readonly_bytes': 'read_only_bytes',
    'disk_size_bytes': 'disk_total_bytes',
    'disk_used_bytes': 'disk_used_bytes',
    'total_pinned_bytes': 'total_pinned_bytes',
    'flags': 'flags',
}


def _label(value):
    # Names from os.listdir keep undecodable bytes as lone surrogates, which
    # the exposition format cannot encode.
    return value.encode("utf-8", "surrogateescape").decode("utf-8", "replace")


def btrfs_volume_metrics(registry, stats):
    """Collect per-volume information metrics."""
    info = Gauge('info', 'Filesystem information', ['uuid', 'label'],
                 namespace=NAMESPACE, registry=registry)
    features = Gauge('feature_info', 'Enabled filesystem features', ['uuid', 'feature'],
                     namespace=NAMESPACE, registry=registry)
    gauges = [(Gauge(name, doc, ['uuid'], namespace=NAMESPACE, registry=registry), attr)
              for name, attr, doc in VOLUME_METRICS]

    for s in stats:
        info.labels(_label(s.uuid), _label(s.label)).set(1)
        for feature in sorted(s.features):
            features.labels(_label(s.uuid), _label(feature)).set(1)
        for g, attr in gauges:
            g.labels(_label(s.uuid)).set(getattr(s, attr))


def btrfs_device_metrics(registry, stats):
    """Collect btrfs device size metrics."""
    g = Gauge('device_size_bytes', 'Size of a device that is part of the filesystem',
              ['uuid', 'device'], namespace=NAMESPACE, registry=registry)

    for s in stats:
        for name, device in sorted(s.devices.items()):
            g.labels(_label(s.uuid), _label(name)).set(device.size)


def btrfs_allocation_metrics(registry, stats):
    """Collect btrfs allocation metrics."""
    reserve = [(Gauge(name, doc, ['uuid'], namespace=NAMESPACE, registry=registry), attr)
               for name, attr, doc in ALLOCATION_METRICS]

    metrics = {}
    for m, attr in metric_to_attribute.items():
        metrics[m] = Gauge(m, 'btrfs allocation data ({})'.format(attr),
                           ['uuid', 'block_group_type'],
                           namespace=NAMESPACE, subsystem='allocation', registry=registry)

    for s in stats:
        for g, attr in reserve:
            g.labels(_label(s.uuid)).set(getattr(s.allocation, attr))

        for type_ in btrfs_sysfs.BLOCK_GROUP_TYPES:
            alloc = getattr(s.allocation, type_)
            for m, attr in metric_to_attribute.items():
                metrics[m].labels(_label(s.uuid), type_).set(getattr(alloc, attr))


def btrfs_layout_metrics(registry, stats):
    """Collect btrfs per-layout (RAID profile) usage metrics."""
    labels = ['uuid', 'block_group_type', 'mode']
    size = Gauge('size_bytes', 'Amount of space allocated for a layout, in bytes',
                 labels, namespace=NAMESPACE, registry=registry)
    used = Gauge('used_bytes', 'Amount of used space by a layout, in bytes',
                 labels, namespace=NAMESPACE, registry=registry)
    ratio = Gauge('allocation_ratio', 'Data allocation ratio for a layout/profile',
                  labels, namespace=NAMESPACE, registry=registry)

    for s in stats:
        for type_ in btrfs_sysfs.BLOCK_GROUP_TYPES:
            layouts = getattr(s.allocation, type_).layouts
            for mode, usage in sorted(layouts.items()):
                size.labels(_label(s.uuid), type_, _label(mode)).set(usage.total_bytes)
                used.labels(_label(s.uuid), type_, _label(mode)).set(usage.used_bytes)
                ratio.labels(_label(s.uuid), type_, _label(mode)).set(usage.ratio)


def collect_btrfs_metrics(registry, stats):
    btrfs_volume_metrics(registry, stats)
    btrfs_device_metrics(registry, stats)
    btrfs_allocation_metrics(registry, stats)
    btrfs_layout_metrics(registry, stats)


def main(argv=None):
    if argv is None:
        argv = sys.argv

    parser = argparse.ArgumentParser(
        prog=os.path.basename(argv[0]),
        exit_on_error=False,
        description=__doc__,
    )
    parser.add_argument(
        "--sysfs",
        default=btrfs_sysfs.DEFAULT_SYS_MOUNT_POINT,
        dest="sysfs",
        metavar="PATH",
        help="sysfs mount point (default: %(default)s)",
    )
    parser.add_argument(
        "-f",
        "--prom-file",
        dest="prom_file",
        metavar="FILE",
        help="Write metrics to the specified file instead of stdout",
    )

    try:
        args = parser.parse_args(argv[1:])
    except argparse.ArgumentError as err:
        print(err, file=sys.stderr)
        return 1

    try:
        stats = btrfs_sysfs.get_stats(args.sysfs)
    except btrfs_sysfs.Error as e:
        print("ERROR: {}".format(e), file=sys.stderr)
        return 1

    registry = CollectorRegistry()
    collect_btrfs_metrics(registry, stats)

    if args.prom_file:
        write_to_textfile(args.prom_file, registry)
    else:
        print(generate_latest(registry).decode(), end="")
    return 0


if __name__ == "__main__":
    sys.exit(main(sys.argv))
