"""Vendor-independent GPU information model and refresh logic."""

from __future__ import annotations

import enum
import math
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Callable, Optional

import psutil

DRM_ERR_NO_DEVICE = -1001
DRM_ERR_NO_ACCESS = -1002
DRM_ERR_NOT_ROOT = -1003
DRM_ERR_INVALID = -1004
DRM_ERR_NO_FD = -1005

DRM_PDEV = "drm-pdev"
DRM_CLIENT_ID = "drm-client-id"

_DRM_ERRORS = {
    DRM_ERR_NO_DEVICE: "no device\n",
    DRM_ERR_NO_ACCESS: "no access\n",
    DRM_ERR_NOT_ROOT: "not root\n",
    DRM_ERR_INVALID: "invalid args\n",
    DRM_ERR_NO_FD: "no fd\n",
}

_PCIE_GEN_BY_SPEED = {2: 1, 5: 2, 8: 3, 16: 4, 32: 5, 64: 6}

_C_SPACES = " \t\n\v\f\r"


class ProcessType(enum.IntFlag):
    """Kind of work a process submits to a GPU."""

    NONE = 0
    GRAPHICAL = 1
    COMPUTE = 2


@dataclass
class GpuProcess:
    """One process using a GPU; ``None`` marks a value that is not known."""

    pid: int
    type: ProcessType = ProcessType.NONE
    cmdline: Optional[str] = None
    user_name: Optional[str] = None
    gpu_usage: Optional[int] = None
    encode_usage: Optional[int] = None
    decode_usage: Optional[int] = None
    gpu_memory_usage: Optional[int] = None
    gpu_memory_percentage: Optional[int] = None
    cpu_usage: Optional[int] = None
    cpu_memory_res: Optional[int] = None
    cpu_memory_virt: Optional[int] = None
    gfx_engine_used: Optional[int] = None
    compute_engine_used: Optional[int] = None
    enc_engine_used: Optional[int] = None
    dec_engine_used: Optional[int] = None
    gpu_cycles: Optional[int] = None
    sample_delta: Optional[int] = None


@dataclass
class StaticInfo:
    """Properties of a GPU that do not change while it is monitored."""

    device_name: Optional[str] = None
    max_pcie_gen: Optional[int] = None
    max_pcie_link_width: Optional[int] = None
    temperature_shutdown_threshold: Optional[int] = None
    temperature_slowdown_threshold: Optional[int] = None
    integrated_graphics: bool = False


@dataclass
class DynamicInfo:
    """Measurements of a GPU taken at each refresh."""

    gpu_clock_speed: Optional[int] = None
    gpu_clock_speed_max: Optional[int] = None
    mem_clock_speed: Optional[int] = None
    mem_clock_speed_max: Optional[int] = None
    gpu_util_rate: Optional[int] = None
    mem_util_rate: Optional[int] = None
    encoder_rate: Optional[int] = None
    decoder_rate: Optional[int] = None
    total_memory: Optional[int] = None
    free_memory: Optional[int] = None
    used_memory: Optional[int] = None
    pcie_link_gen: Optional[int] = None
    pcie_link_width: Optional[int] = None
    pcie_rx: Optional[int] = None
    pcie_tx: Optional[int] = None
    fan_speed: Optional[int] = None
    gpu_temp: Optional[int] = None
    power_draw: Optional[int] = None
    power_draw_max: Optional[int] = None
    encode_decode_shared: bool = False


class GpuInfo(ABC):
    """A monitored GPU; vendors provide the refresh operations."""

    def __init__(self, vendor: "GpuVendor", pdev: str = "") -> None:
        self.vendor = vendor
        self.pdev = pdev
        self.static_info = StaticInfo()
        self.dynamic_info = DynamicInfo()
        self.processes: list[GpuProcess] = []

    @abstractmethod
    def populate_static_info(self) -> None:
        """Fill ``static_info``."""

    @abstractmethod
    def refresh_dynamic_info(self) -> None:
        """Refresh ``dynamic_info``."""

    @abstractmethod
    def refresh_running_processes(self) -> None:
        """Finish the process update of this GPU."""


class GpuVendor(ABC):
    """A source of GPUs of one vendor."""

    name: str = ""

    @abstractmethod
    def init(self) -> bool:
        """Prepare the vendor backend; return whether it is usable."""

    @abstractmethod
    def shutdown(self) -> None:
        """Release everything the vendor holds."""

    @abstractmethod
    def last_error_string(self) -> str:
        """Describe the last failure of the backend."""

    @abstractmethod
    def get_device_handles(self) -> list[GpuInfo]:
        """Return the GPUs of this vendor; raise OSError on failure."""


_VENDORS: list[GpuVendor] = []


def register_gpu_vendor(vendor: GpuVendor) -> None:
    """Add a vendor; the latest registered vendor is visited first."""
    _VENDORS.insert(0, vendor)


def registered_vendors() -> list[GpuVendor]:
    """Return the registered vendors in the order they are visited."""
    return list(_VENDORS)


def init_info_extraction() -> list[GpuInfo]:
    """Initialise every vendor and collect all of their GPUs."""
    devices: list[GpuInfo] = []
    for vendor in _VENDORS:
        if not vendor.init():
            continue
        try:
            found = vendor.get_device_handles()
        except OSError:
            found = []
        if not found:
            vendor.shutdown()
            continue
        devices.extend(found)
    return devices


def shutdown_info_extraction(devices: list[GpuInfo]) -> None:
    """Drop all devices, shut every vendor down and forget cached processes."""
    for device in devices:
        device.processes.clear()
    devices.clear()
    for vendor in _VENDORS:
        vendor.shutdown()
    _process_cache.clear()


def populate_static_infos(devices: list[GpuInfo]) -> None:
    """Fill the static information of every device."""
    for device in devices:
        device.populate_static_info()


def refresh_dynamic_infos(devices: list[GpuInfo]) -> None:
    """Refresh the dynamic information of every device."""
    for device in devices:
        device.refresh_dynamic_info()


def _accumulate(current: Optional[int], extra: int) -> int:
    if current is None:
        return min(100, extra)
    return min(100, current + extra)


def fix_dynamic_info_from_process_info(devices: list[GpuInfo]) -> None:
    """Derive GPU, encoder and decoder rates from per-process usage."""
    for device in devices:
        info = device.dynamic_info
        reported = info.gpu_util_rate
        info.gpu_util_rate = None
        need_encode = info.encoder_rate is None
        need_decode = info.decoder_rate is None

        for process in device.processes:
            if process.gpu_usage is not None:
                info.gpu_util_rate = _accumulate(info.gpu_util_rate, process.gpu_usage)
            if need_encode and process.encode_usage is not None:
                info.encoder_rate = _accumulate(info.encoder_rate, process.encode_usage)
            if need_decode and process.decode_usage is not None:
                info.decoder_rate = _accumulate(info.decoder_rate, process.decode_usage)

        if reported is not None:
            if info.gpu_util_rate is None:
                info.gpu_util_rate = reported
            else:
                info.gpu_util_rate = max(info.gpu_util_rate, reported)


def refresh_utilisation_rate(gpu: GpuInfo) -> None:
    """Compute the GPU utilisation from per-process cycle counts."""
    total_cycles = sum(p.gpu_cycles or 0 for p in gpu.processes)
    if not total_cycles:
        return
    total_delta = sum(p.sample_delta or 0 for p in gpu.processes)
    avg_delta_secs = total_delta / len(gpu.processes) / 1_000_000_000.0
    max_freq_hz = (gpu.dynamic_info.gpu_clock_speed_max or 0) * 1_000_000
    denominator = float(max_freq_hz) * avg_delta_secs * 2
    if denominator <= 0:
        return
    rate = int(total_cycles / denominator * 100)
    gpu.dynamic_info.gpu_util_rate = min(rate, 100)


def extract_drm_fdinfo_key_value(line: str) -> Optional[tuple[str, str]]:
    """Split a ``key: value`` line; return None if it is not one."""
    colon = line.find(":")
    if colon <= 0:
        return None
    value = line[colon + 1:].lstrip(_C_SPACES)
    if not value:
        return None
    return line[:colon], value


def pcie_gen_from_link_speed(link_speed: int) -> int:
    """Map a PCIe link speed in GT/s to its generation, 0 if unknown."""
    return _PCIE_GEN_BY_SPEED.get(link_speed, 0)


def busy_usage_from_time_usage_round(
    current_use_ns: int, previous_use_ns: int, time_between_measurement: int
) -> int:
    """Percentage of the interval an engine was busy, rounded."""
    return (
        (current_use_ns - previous_use_ns) * 100 + time_between_measurement // 2
    ) // time_between_measurement


def drm_error_string(status: int) -> str:
    """Describe a negative DRM library status."""
    return _DRM_ERRORS.get(status, "unknown error\n")


def _c_round(value: float) -> int:
    return int(math.copysign(math.floor(abs(value) + 0.5), value))


def _identify_process(pid: int) -> tuple[Optional[str], Optional[str]]:
    """Return the user name and command line of a process."""
    try:
        proc = psutil.Process(pid)
    except psutil.Error:
        return None, None
    try:
        user_name: Optional[str] = proc.username()
    except psutil.Error:
        user_name = None
    try:
        cmdline: Optional[str] = " ".join(proc.cmdline()) or proc.name()
    except psutil.Error:
        cmdline = None
    return user_name, cmdline


def _sample_process(pid: int) -> Optional[tuple[float, int, int, int]]:
    """Return consumed CPU seconds, resident and virtual memory and a timestamp in ns."""
    try:
        proc = psutil.Process(pid)
        cpu = proc.cpu_times()
        memory = proc.memory_info()
    except psutil.Error:
        return None
    return cpu.user + cpu.system, memory.rss, memory.vms, time.monotonic_ns()


@dataclass
class _CacheEntry:
    cmdline: Optional[str]
    user_name: Optional[str]
    last_cpu_time: Optional[float] = None
    last_timestamp: int = 0


@dataclass
class ProcessInfoCache:
    """Per-pid host information kept between two process updates.

    ``identify(pid)`` returns ``(user_name, cmdline)``; ``sample(pid)`` returns
    ``(cpu_seconds, resident_bytes, virtual_bytes, timestamp_ns)`` or None.
    """

    identify: Callable[[int], tuple[Optional[str], Optional[str]]] = _identify_process
    sample: Callable[[int], Optional[tuple[float, int, int, int]]] = _sample_process
    _cached: dict[int, _CacheEntry] = field(default_factory=dict, init=False, repr=False)
    _updated: dict[int, _CacheEntry] = field(default_factory=dict, init=False, repr=False)

    def populate(self, gpu: GpuInfo) -> None:
        """Fill host-side fields of every process of ``gpu``."""
        for process in gpu.processes:
            pid = process.pid
            entry = self._cached.pop(pid, None)
            if entry is None:
                entry = self._updated.get(pid)
                if entry is None:
                    user_name, cmdline = self.identify(pid)
                    entry = _CacheEntry(cmdline=cmdline, user_name=user_name)
            self._updated[pid] = entry

            if entry.cmdline is not None:
                process.cmdline = entry.cmdline
            if entry.user_name is not None:
                process.user_name = entry.user_name

            measured = self.sample(pid)
            if measured is None:
                entry.last_cpu_time = None
            else:
                cpu_seconds, resident, virtual, timestamp = measured
                if entry.last_cpu_time is not None:
                    elapsed = (timestamp - entry.last_timestamp) / 1_000_000_000
                    usage = 0
                    if elapsed > 0:
                        usage = _c_round(100.0 * (cpu_seconds - entry.last_cpu_time) / elapsed)
                    process.cpu_usage = max(0, usage)
                else:
                    process.cpu_usage = 0
                process.cpu_memory_res = resident
                process.cpu_memory_virt = virtual
                entry.last_timestamp = timestamp
                entry.last_cpu_time = cpu_seconds

            total = gpu.dynamic_info.total_memory
            if total and process.gpu_memory_usage is not None:
                process.gpu_memory_percentage = _c_round(100.0 * process.gpu_memory_usage / total)

    def clean_old(self) -> None:
        """Forget pids not seen since the previous update."""
        self._cached = self._updated
        self._updated = {}

    def clear(self) -> None:
        """Forget the cached pids."""
        self._cached.clear()


_process_cache = ProcessInfoCache()