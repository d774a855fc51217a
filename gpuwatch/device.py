"""Linux sysfs devices: lookup, ancestry, enumeration and PCIe link limits."""

from __future__ import annotations

import fnmatch
import glob
import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Mapping, Optional

SYSFS_ROOT = "/sys"

_UINT = re.compile(r"\s*\+?(\d+)")


class DeviceNotFoundError(LookupError):
    """A device, or a property of a device, does not exist."""


def _narrower(current: Optional[int], candidate: int) -> int:
    return candidate if current is None else min(current, candidate)


@dataclass
class PcieLink:
    """Narrowest PCIe link speed (GT/s) and width on the path to a device.

    ``None`` means that no PCIe port on the path reported a value.
    """

    speed: Optional[int] = None
    width: Optional[int] = None

    def narrow(self, speed: int, width: int) -> None:
        """Take the smaller of the current and the given values."""
        self.speed = _narrower(self.speed, speed)
        self.width = _narrower(self.width, width)


@dataclass(frozen=True)
class Device:
    """A device directory in sysfs."""

    syspath: str

    @classmethod
    def from_syspath(cls, syspath: "str | os.PathLike[str]") -> "Device":
        """Open the device at ``syspath``; raise DeviceNotFoundError if absent."""
        path = os.path.realpath(os.fspath(syspath))
        if not os.path.isdir(path):
            raise DeviceNotFoundError(f"no device at {os.fspath(syspath)}")
        return cls(path)

    def _uevent(self) -> dict[str, str]:
        try:
            text = Path(self.syspath, "uevent").read_text(errors="replace")
        except OSError:
            return {}
        entries: dict[str, str] = {}
        for line in text.splitlines():
            key, sep, value = line.partition("=")
            if sep and key:
                entries[key] = value
        return entries

    def _link_name(self, link: str) -> str:
        try:
            target = os.readlink(os.path.join(self.syspath, link))
        except OSError:
            raise DeviceNotFoundError(f"{self.syspath} has no {link}") from None
        return os.path.basename(target.rstrip("/"))

    def parent(self) -> "Device":
        """Return the nearest ancestor that is a device."""
        path = os.path.dirname(self.syspath)
        while True:
            if os.path.isfile(os.path.join(path, "uevent")):
                return Device(path)
            upper = os.path.dirname(path)
            if upper == path:
                raise DeviceNotFoundError(f"{self.syspath} has no parent device")
            path = upper

    def driver(self) -> str:
        """Return the name of the driver bound to the device."""
        return self._link_name("driver")

    def subsystem(self) -> str:
        """Return the name of the subsystem the device belongs to."""
        return self._link_name("subsystem")

    def devname(self) -> str:
        """Return the device node path, such as ``/dev/dri/card0``."""
        name = self._uevent().get("DEVNAME")
        if not name:
            raise DeviceNotFoundError(f"{self.syspath} has no device node")
        return name if name.startswith("/") else f"/dev/{name}"

    def properties(self) -> dict[str, str]:
        """Return the device properties."""
        props = self._uevent()
        if props.get("DEVNAME") and not props["DEVNAME"].startswith("/"):
            props["DEVNAME"] = f"/dev/{props['DEVNAME']}"
        for key, link in (("SUBSYSTEM", "subsystem"), ("DRIVER", "driver")):
            if key not in props:
                try:
                    props[key] = self._link_name(link)
                except DeviceNotFoundError:
                    pass
        return props

    def property_value(self, key: str) -> str:
        """Return one device property; raise DeviceNotFoundError if unset."""
        try:
            return self.properties()[key]
        except KeyError:
            raise DeviceNotFoundError(f"{self.syspath} has no property {key}") from None

    def sysattr_value(self, sysattr: str) -> str:
        """Read a sysfs attribute of the device, without trailing newlines."""
        try:
            text = Path(self.syspath, sysattr).read_text(errors="replace")
        except OSError:
            raise DeviceNotFoundError(f"{self.syspath} has no attribute {sysattr}") from None
        return text.rstrip("\r\n")


def _device_dirs_below(path: str) -> Iterable[str]:
    for dirpath, _dirnames, filenames in os.walk(path, followlinks=False):
        if "uevent" in filenames:
            yield dirpath


def _device_dirs_in(root: str, subsystem: Optional[str]) -> Iterable[str]:
    name = glob.escape(subsystem) if subsystem is not None else "*"
    patterns = (
        os.path.join(glob.escape(root), "class", name, "*"),
        os.path.join(glob.escape(root), "bus", name, "devices", "*"),
    )
    for pattern in patterns:
        for entry in glob.glob(pattern):
            resolved = os.path.realpath(entry)
            if os.path.isfile(os.path.join(resolved, "uevent")):
                yield resolved


def _matches(
    device: Device, subsystem: Optional[str], properties: Mapping[str, str]
) -> bool:
    if subsystem is not None:
        try:
            if device.subsystem() != subsystem:
                return False
        except DeviceNotFoundError:
            return False
    if properties:
        props = device.properties()
        for key, pattern in properties.items():
            value = props.get(key)
            if value is None or not fnmatch.fnmatchcase(value, pattern):
                return False
    return True


def enumerate_devices(
    subsystem: Optional[str] = None,
    parent: Optional[Device] = None,
    properties: Optional[Mapping[str, str]] = None,
    root: "str | os.PathLike[str] | None" = None,
) -> list[Device]:
    """List devices matching a subsystem, an ancestor and property globs.

    With ``parent`` the parent itself and everything below it are searched;
    otherwise the class and bus directories of the sysfs ``root``.
    """
    if parent is not None:
        candidates = _device_dirs_below(parent.syspath)
    else:
        base = os.fspath(root) if root is not None else SYSFS_ROOT
        candidates = _device_dirs_in(base, subsystem)
    found = {Device(path) for path in candidates}
    return sorted(
        (dev for dev in found if _matches(dev, subsystem, properties or {})),
        key=lambda dev: dev.syspath,
    )


def _parse_uint(text: str) -> int:
    match = _UINT.match(text)
    if match is None:
        raise ValueError(f"not an unsigned number: {text!r}")
    return int(match.group(1))


def _walk_pcie(device: Device, link: PcieLink, speed_attr: str, width_attr: str) -> None:
    if device.driver() == "pcieport":
        speed_text = device.sysattr_value(speed_attr)
        width_text = device.sysattr_value(width_attr)
        speed = _parse_uint(speed_text)
        width = _parse_uint(width_text)
        link.narrow(speed, width)
    try:
        parent = device.parent()
    except DeviceNotFoundError:
        return
    try:
        _walk_pcie(parent, link, speed_attr, width_attr)
    except (DeviceNotFoundError, ValueError):
        pass


def maximum_pcie_link(device: Device) -> PcieLink:
    """Return the narrowest maximum link of the PCIe ports above ``device``."""
    link = PcieLink()
    _walk_pcie(device, link, "max_link_speed", "max_link_width")
    return link


def current_pcie_link(device: Device) -> PcieLink:
    """Return the narrowest current link of the PCIe ports above ``device``."""
    fresh = Device.from_syspath(device.syspath)
    link = PcieLink()
    _walk_pcie(fresh, link, "current_link_speed", "current_link_width")
    return link


def find_hwmon(device: Device) -> Optional[Device]:
    """Return the first hwmon device at or below ``device``, if any."""
    found = enumerate_devices("hwmon", parent=device)
    return found[0] if found else None