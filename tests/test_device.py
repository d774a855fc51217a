import os

import pytest

from gpuwatch.device import (
    Device,
    DeviceNotFoundError,
    PcieLink,
    current_pcie_link,
    enumerate_devices,
    find_hwmon,
    maximum_pcie_link,
)


def _mkdev(path, uevent="", **attrs):
    path.mkdir(parents=True, exist_ok=True)
    (path / "uevent").write_text(uevent)
    for name, value in attrs.items():
        (path / name).write_text(value)
    return path


def _link(target, at):
    os.symlink(str(target), str(at))


@pytest.fixture
def sysfs(tmp_path):
    root = tmp_path / "sys"
    host = _mkdev(root / "devices" / "pci0000:00")
    root_port = _mkdev(
        host / "0000:00:01.0",
        "DRIVER=pcieport\nPCI_SLOT_NAME=0000:00:01.0\n",
        max_link_speed="16.0 GT/s PCIe\n",
        max_link_width="16\n",
        current_link_speed="16.0 GT/s PCIe\n",
        current_link_width="8\n",
    )
    _link(root / "bus" / "pci" / "drivers" / "pcieport", root_port / "driver")
    switch = _mkdev(
        root_port / "0000:01:00.0",
        "DRIVER=pcieport\n",
        max_link_speed="8.0 GT/s PCIe\n",
        max_link_width="16\n",
        current_link_speed="8.0 GT/s PCIe\n",
        current_link_width="16\n",
    )
    _link(root / "bus" / "pci" / "drivers" / "pcieport", switch / "driver")
    gpu = _mkdev(
        switch / "0000:02:00.0",
        "DRIVER=amdgpu\nPCI_SLOT_NAME=0000:02:00.0\n",
        vendor="0x1002\n",
    )
    _link(root / "bus" / "pci" / "drivers" / "amdgpu", gpu / "driver")
    hwmon = _mkdev(gpu / "hwmon" / "hwmon3", "", name="amdgpu\n")
    _link(root / "class" / "hwmon", hwmon / "subsystem")
    card = _mkdev(gpu / "drm" / "card0", "MAJOR=226\nMINOR=0\nDEVNAME=dri/card0\n")
    _link(root / "class" / "drm", card / "subsystem")
    (root / "class" / "drm").mkdir(parents=True)
    (root / "class" / "hwmon").mkdir(parents=True)
    _link(card, root / "class" / "drm" / "card0")
    _link(hwmon, root / "class" / "hwmon" / "hwmon3")
    return {
        "root": root,
        "host": host,
        "root_port": root_port,
        "switch": switch,
        "gpu": gpu,
        "hwmon": hwmon,
        "card": card,
    }


def test_from_syspath_missing_raises(tmp_path):
    with pytest.raises(DeviceNotFoundError):
        Device.from_syspath(tmp_path / "absent")


def test_driver_and_missing_driver(sysfs):
    gpu = Device.from_syspath(sysfs["gpu"])
    assert gpu.driver() == "amdgpu"
    with pytest.raises(DeviceNotFoundError):
        Device.from_syspath(sysfs["host"]).driver()


def test_parent_chain(sysfs):
    gpu = Device.from_syspath(sysfs["gpu"])
    assert gpu.parent() == Device.from_syspath(sysfs["switch"])
    card = Device.from_syspath(sysfs["card"])
    assert card.parent() == gpu
    with pytest.raises(DeviceNotFoundError):
        Device.from_syspath(sysfs["host"]).parent()


def test_devname(sysfs):
    assert Device.from_syspath(sysfs["card"]).devname() == "/dev/dri/card0"
    with pytest.raises(DeviceNotFoundError):
        Device.from_syspath(sysfs["gpu"]).devname()


def test_property_value(sysfs):
    gpu = Device.from_syspath(sysfs["gpu"])
    assert gpu.property_value("PCI_SLOT_NAME") == "0000:02:00.0"
    assert Device.from_syspath(sysfs["card"]).property_value("SUBSYSTEM") == "drm"
    with pytest.raises(DeviceNotFoundError):
        gpu.property_value("ID_MODEL_FROM_DATABASE")


def test_sysattr_value_strips_newline(sysfs):
    gpu = Device.from_syspath(sysfs["gpu"])
    assert gpu.sysattr_value("vendor") == "0x1002"
    with pytest.raises(DeviceNotFoundError):
        gpu.sysattr_value("enable")


def test_subsystem(sysfs):
    assert Device.from_syspath(sysfs["hwmon"]).subsystem() == "hwmon"


def test_maximum_pcie_link_takes_narrowest(sysfs):
    link = maximum_pcie_link(Device.from_syspath(sysfs["gpu"]))
    assert link == PcieLink(speed=8, width=16)


def test_current_pcie_link_takes_narrowest(sysfs):
    link = current_pcie_link(Device.from_syspath(sysfs["gpu"]))
    assert link == PcieLink(speed=8, width=8)


def test_pcie_link_without_driver_raises(sysfs):
    with pytest.raises(DeviceNotFoundError):
        maximum_pcie_link(Device.from_syspath(sysfs["host"]))


def test_pcie_link_bad_attribute_on_device_raises(sysfs):
    (sysfs["switch"] / "max_link_width").write_text("wide\n")
    with pytest.raises(ValueError):
        maximum_pcie_link(Device.from_syspath(sysfs["switch"]))


def test_pcie_link_ancestor_failure_is_ignored(sysfs):
    (sysfs["root_port"] / "max_link_speed").write_text("2.5 GT/s PCIe\n")
    (sysfs["root_port"] / "max_link_width").write_text("wide\n")
    link = maximum_pcie_link(Device.from_syspath(sysfs["gpu"]))
    assert link == PcieLink(speed=8, width=16)


def test_pcie_link_without_ports(tmp_path):
    lone = _mkdev(tmp_path / "sys" / "devices" / "platform" / "gpu")
    _link(tmp_path / "sys" / "bus" / "platform" / "drivers" / "msm", lone / "driver")
    link = maximum_pcie_link(Device.from_syspath(lone))
    assert link.speed is None and link.width is None


def test_enumerate_by_subsystem(sysfs):
    found = enumerate_devices("drm", root=sysfs["root"])
    assert found == [Device.from_syspath(sysfs["card"])]


def test_enumerate_by_property(sysfs):
    root = sysfs["root"]
    matched = enumerate_devices("drm", properties={"DEVNAME": "/dev/dri/*"}, root=root)
    assert [dev.syspath for dev in matched] == [os.path.realpath(sysfs["card"])]
    assert enumerate_devices("drm", properties={"DEVNAME": "/dev/other*"}, root=root) == []


def test_enumerate_below_parent(sysfs):
    gpu = Device.from_syspath(sysfs["gpu"])
    assert enumerate_devices("hwmon", parent=gpu) == [Device.from_syspath(sysfs["hwmon"])]
    everything = enumerate_devices(parent=gpu)
    assert gpu in everything
    assert all(dev.syspath.startswith(gpu.syspath) for dev in everything)


def test_find_hwmon(sysfs):
    gpu = Device.from_syspath(sysfs["gpu"])
    assert find_hwmon(gpu) == Device.from_syspath(sysfs["hwmon"])
    assert find_hwmon(Device.from_syspath(sysfs["card"])) is None