"""Intel GPUs driven by the i915 kernel driver."""

from __future__ import annotations

import os
import re
import time
from dataclasses import dataclass
from typing import Iterable, Optional

from gpuwatch.device import (
    SYSFS_ROOT,
    Device,
    DeviceNotFoundError,
    current_pcie_link,
    enumerate_devices,
    maximum_pcie_link,
)
from gpuwatch.gpuinfo import (
    DRM_CLIENT_ID,
    DRM_PDEV,
    DynamicInfo,
    GpuInfo,
    GpuProcess,
    GpuVendor,
    ProcessType,
    StaticInfo,
    busy_usage_from_time_usage_round,
    extract_drm_fdinfo_key_value,
    pcie_gen_from_link_speed,
    register_gpu_vendor,
)

VENDOR_INTEL = "0x8086"
INTEL_DRIVER = "i915"
# The integrated Intel GPU always sits at this PCI address.
INTEGRATED_I915_GPU_PCI_ID = "0000:00:02.0"
MAX_DEVICE_NAME = 128

_DRM_RENDER = "drm-engine-render"
_DRM_COPY = "drm-engine-copy"
_DRM_VIDEO = "drm-engine-video"
_DRM_VIDEO_ENHANCE = "drm-engine-video-enhance"

_UINT = re.compile(r"\s*\+?(\d+)")


def _leading_uint(text: str) -> Optional[tuple[int, str]]:
    """Parse a leading unsigned number; return it and the remaining text."""
    match = _UINT.match(text)
    if match is None:
        return None
    return int(match.group(1)), text[match.end():]


def _uint_or_zero(text: str) -> int:
    parsed = _leading_uint(text)
    return parsed[0] if parsed is not None else 0


def _busy(current: Optional[int], previous: Optional[int], elapsed: int) -> Optional[int]:
    if current is None or previous is None or elapsed <= 0:
        return None
    if current < previous or current - previous > elapsed:
        return None
    return busy_usage_from_time_usage_round(current, previous, elapsed)


@dataclass
class _Measurement:
    render: Optional[int]
    video: Optional[int]
    video_enhance: Optional[int]
    timestamp: int


class IntelGpu(GpuInfo):
    """An Intel GPU: its DRM card node, its PCI device and its DRM clients."""

    def __init__(
        self, vendor: GpuVendor, pdev: str, card_device: Device, driver_device: Device
    ) -> None:
        super().__init__(vendor, pdev)
        self.card_device = card_device
        self.driver_device = driver_device
        self._last: dict[tuple[int, int, str], _Measurement] = {}
        self._current: dict[tuple[int, int, str], _Measurement] = {}

    def parse_fdinfo(
        self, lines: Iterable[str], process: GpuProcess, now: Optional[int] = None
    ) -> bool:
        """Fill ``process`` from fdinfo ``lines``.

        Return False if the lines belong to another GPU or name no client.
        ``now`` is a timestamp in nanoseconds.
        """
        if now is None:
            now = time.monotonic_ns()
        client_id: Optional[int] = None

        for raw in lines:
            line = raw[:-1] if raw.endswith("\n") else raw
            pair = extract_drm_fdinfo_key_value(line)
            if pair is None:
                continue
            key, value = pair

            if key == DRM_PDEV:
                if value != self.pdev:
                    return False
            elif key == DRM_CLIENT_ID:
                parsed = _leading_uint(value)
                if parsed is None or parsed[1]:
                    continue
                client_id = parsed[0]
            elif key in (_DRM_RENDER, _DRM_COPY, _DRM_VIDEO, _DRM_VIDEO_ENHANCE):
                parsed = _leading_uint(value)
                if parsed is None or parsed[1] != " ns":
                    continue
                spent = parsed[0]
                if key == _DRM_RENDER:
                    process.gfx_engine_used = spent
                elif key == _DRM_VIDEO:
                    # The video engine serves both encoding and decoding.
                    process.dec_engine_used = spent
                    process.enc_engine_used = spent

        if client_id is None:
            return False
        # The driver exposes no compute engine metrics.
        process.type |= ProcessType.GRAPHICAL

        cache_key = (client_id, process.pid, self.pdev)
        previous = self._last.pop(cache_key, None)
        if previous is not None:
            elapsed = now - previous.timestamp
            gfx = _busy(process.gfx_engine_used, previous.render, elapsed)
            if gfx is not None:
                process.gpu_usage = gfx
            dec = _busy(process.dec_engine_used, previous.video, elapsed)
            if dec is not None:
                process.decode_usage = dec
            enc = _busy(process.enc_engine_used, previous.video_enhance, elapsed)
            if enc is not None:
                process.encode_usage = enc

        assert cache_key not in self._current, "client id processed twice in one update"
        self._current[cache_key] = _Measurement(
            render=process.gfx_engine_used,
            video=process.dec_engine_used,
            video_enhance=process.enc_engine_used,
            timestamp=now,
        )
        return True

    def swap_process_cache(self) -> None:
        """Make this update's measurements the reference for the next one."""
        self._last = self._current
        self._current = {}

    def populate_static_info(self) -> None:
        info = StaticInfo()
        self.static_info = info

        try:
            model = self.driver_device.property_value("ID_MODEL_FROM_DATABASE")
        except DeviceNotFoundError:
            model = None
        if model is not None:
            name = model[: MAX_DEVICE_NAME - 1]
            info.device_name = name.replace("[", "(").replace("]", ")")

        try:
            link = maximum_pcie_link(self.driver_device)
        except (DeviceNotFoundError, ValueError):
            link = None
        if link is not None and link.width is not None and link.speed is not None:
            info.max_pcie_link_width = link.width
            info.max_pcie_gen = pcie_gen_from_link_speed(link.speed)

        if self.pdev == INTEGRATED_I915_GPU_PCI_ID:
            info.integrated_graphics = True

    def refresh_dynamic_info(self) -> None:
        info = DynamicInfo(encode_decode_shared=True)
        self.dynamic_info = info

        # A fresh device avoids reading cached attribute values.
        try:
            card = Device.from_syspath(self.card_device.syspath)
        except DeviceNotFoundError:
            return

        def attribute(name: str) -> Optional[int]:
            try:
                return _uint_or_zero(card.sysattr_value(name))
            except DeviceNotFoundError:
                return None

        current = attribute("gt_cur_freq_mhz")
        if current is not None:
            info.gpu_clock_speed = current
        maximum = attribute("gt_max_freq_mhz")
        if maximum is not None:
            info.gpu_clock_speed_max = maximum
        # The memory frequency attributes are reported in the GPU clock field.
        for name in ("mem_cur_freq_mhz", "mem_max_freq_mhz"):
            value = attribute(name)
            if value is not None:
                info.gpu_clock_speed = value

        if not self.static_info.integrated_graphics:
            try:
                link = current_pcie_link(card)
            except (DeviceNotFoundError, ValueError):
                link = None
            if link is not None and link.width is not None and link.speed is not None:
                info.pcie_link_width = link.width
                info.pcie_link_gen = pcie_gen_from_link_speed(link.speed)

    def refresh_running_processes(self) -> None:
        self.swap_process_cache()


def _intel_parent(card: Device) -> Optional[Device]:
    """Return the enabled i915 Intel PCI device behind a DRM card node."""
    try:
        parent = card.parent()
        if parent.sysattr_value("vendor") != VENDOR_INTEL:
            return None
        if parent.driver() != INTEL_DRIVER:
            return None
        if parent.sysattr_value("enable") != "1":
            return None
    except DeviceNotFoundError:
        return None
    return parent


class IntelVendor(GpuVendor):
    """Finds the Intel GPUs exposed as DRM card nodes."""

    name = "Intel"

    def __init__(self, root: "str | os.PathLike[str] | None" = None) -> None:
        self.root = os.fspath(root) if root is not None else SYSFS_ROOT
        self.devices: list[IntelGpu] = []

    def init(self) -> bool:
        return True

    def shutdown(self) -> None:
        self.devices.clear()

    def last_error_string(self) -> str:
        return "Err"

    def get_device_handles(self) -> list[GpuInfo]:
        try:
            nodes = enumerate_devices(
                "drm", properties={"DEVNAME": "/dev/dri/*"}, root=self.root
            )
        except PermissionError as exc:
            raise OSError("no access to the DRM devices") from exc

        found: list[IntelGpu] = []
        for node in nodes:
            try:
                devname = node.devname()
            except DeviceNotFoundError:
                continue
            if "/dev/dri/card" not in devname:
                continue
            parent = _intel_parent(node)
            if parent is None:
                continue
            try:
                pdev = parent.property_value("PCI_SLOT_NAME")
            except DeviceNotFoundError as exc:
                raise OSError(f"{parent.syspath} has no PCI slot name") from exc
            found.append(IntelGpu(self, pdev, node, parent))
        self.devices = found
        return list(found)


register_gpu_vendor(IntelVendor())