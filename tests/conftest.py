import os

import pytest


FIXTURE_UUID = "0abb23a9-579b-43e6-ad30-227ef47fcb9d"


def write_tree(root, files):
    """Create files below root from a {relative path: content} mapping.

    A value of None creates an empty directory.
    """
    for name, content in files.items():
        path = root / name
        if content is None:
            path.mkdir(parents=True, exist_ok=True)
            continue
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content)
    return root


@pytest.fixture
def sysfs():
    return os.path.abspath(os.path.join(__file__, "..", "fixtures", "sys"))


@pytest.fixture
def fixture_volume(sysfs):
    return os.path.join(sysfs, "fs", "btrfs", FIXTURE_UUID)


@pytest.fixture
def volume(tmp_path):
    """A minimal two-device volume with a single data layout."""
    root = tmp_path / "fs" / "btrfs" / "11111111-2222-3333-4444-555555555555"
    return write_tree(root, {
        "label": "scratch\n",
        "metadata_uuid": "11111111-2222-3333-4444-555555555555\n",
        "nodesize": "16384\n",
        "sectorsize": "4096\n",
        "features/skinny_metadata": "",
        "features/no_holes": "",
        "devices/sda/size": "4194304\n",
        "devices/sdb/size": "2097152\n",
        "allocation/global_rsv_size": "3670016\n",
        "allocation/data/total_bytes": "1073741824\n",
        "allocation/data/bytes_used": "536870912\n",
        "allocation/data/single/total_bytes": "1073741824\n",
        "allocation/data/single/used_bytes": "536870912\n",
        "allocation/metadata": None,
        "allocation/system": None,
    })


@pytest.fixture
def tree(tmp_path):
    def make(files):
        return write_tree(tmp_path, files)
    return make
