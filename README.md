# gpuwatch

`gpuwatch` is a library for reading the state of GPUs on Linux. It provides a
vendor-independent data model for GPU and per-process information, walks sysfs
to find devices and their PCIe links, and parses the per-client DRM `fdinfo`
statistics that the kernel exposes, turning cumulative engine times into busy
percentages.

Intel GPUs driven by the i915 driver are found and refreshed in full. For AMD
GPUs the package parses `fdinfo` entries and tracks per-client engine usage.

## Installation

```
pip install gpuwatch
```

Running the tests needs the `test` extra:

```
pip install "gpuwatch[test]"
pytest
```

## Modules

### `gpuwatch.gpuinfo`

The data model and the functions that act on all GPUs at once.

- `GpuProcess`, `StaticInfo` and `DynamicInfo` are dataclasses; a field set to
  `None` is a value that is not known. `ProcessType` is a flag enum
  (`GRAPHICAL`, `COMPUTE`).
- `GpuInfo` is the abstract base of a monitored GPU, with
  `populate_static_info()`, `refresh_dynamic_info()` and
  `refresh_running_processes()`. `GpuVendor` is the abstract base of a vendor,
  with `init()`, `shutdown()`, `last_error_string()` and
  `get_device_handles()`.
- `register_gpu_vendor(vendor)` adds a vendor (the latest one is visited
  first) and `registered_vendors()` lists them.
- `init_info_extraction()` initialises every registered vendor and returns the
  list of all GPUs found; a vendor that finds none is shut down again.
- `populate_static_infos(devices)` and `refresh_dynamic_infos(devices)` call
  the matching method on each device. `shutdown_info_extraction(devices)`
  empties the list, shuts every vendor down and clears the cached process
  information.
- `fix_dynamic_info_from_process_info(devices)` sums per-process GPU, encoder
  and decoder usage (capped at 100) into the device rates, keeping the larger
  of the summed and the reported GPU rate.
- `refresh_utilisation_rate(gpu)` derives the GPU utilisation from
  per-process cycle counts and the maximum clock.
- `ProcessInfoCache` keeps the command line, user name and consumed CPU time
  of each pid between updates. `populate(gpu)` fills the host-side fields of
  the GPU's processes (CPU usage as a percentage, resident and virtual memory,
  share of GPU memory), `clean_old()` forgets pids not seen since the previous
  update and `clear()` forgets all of them. By default it asks `psutil`; other
  `identify` and `sample` callables can be passed in.

Small helpers:

```python
from gpuwatch.gpuinfo import (
    busy_usage_from_time_usage_round,
    drm_error_string,
    extract_drm_fdinfo_key_value,
    pcie_gen_from_link_speed,
)

pcie_gen_from_link_speed(16)   # 4 (a 16 GT/s link is PCIe gen 4)
pcie_gen_from_link_speed(7)    # 0, unknown speed
extract_drm_fdinfo_key_value("drm-pdev:\t0000:03:00.0")   # ('drm-pdev', '0000:03:00.0')
extract_drm_fdinfo_key_value("no colon here")             # None
busy_usage_from_time_usage_round(1_500_000_000, 1_000_000_000, 1_000_000_000)  # 50
drm_error_string(-1001)        # 'no device\n'
```

### `gpuwatch.device`

Sysfs devices.

- `Device.from_syspath(path)` opens a device directory; a missing one raises
  `DeviceNotFoundError` (a `LookupError`), as do missing properties and
  attributes.
- A `Device` offers `parent()`, `driver()`, `subsystem()`, `devname()`,
  `properties()`, `property_value(key)` and `sysattr_value(name)`.
- `enumerate_devices(subsystem, parent, properties, root)` lists matching
  devices, sorted by path; property values are matched as glob patterns.
- `maximum_pcie_link(device)` and `current_pcie_link(device)` return a
  `PcieLink` holding the narrowest speed (GT/s) and width of the PCIe ports
  above the device, `None` where no port reported one.
- `find_hwmon(device)` returns the first hwmon device at or below a device, or
  `None`.

### `gpuwatch.intel`

`IntelVendor` finds enabled Intel GPUs bound to the i915 driver through their
`/dev/dri/card*` nodes; importing the module registers one. Each GPU is an
`IntelGpu`: its static information holds the model name and maximum PCIe link
and marks the GPU at `0000:00:02.0` as integrated; its dynamic information
holds clock speeds and, for discrete GPUs, the current PCIe link.
`IntelGpu.parse_fdinfo(lines, process, now)` reads one `fdinfo` entry and
computes render, encode and decode usage from the previous update;
`refresh_running_processes()` (or `swap_process_cache()`) closes an update.

### `gpuwatch.amdgpu_fdinfo`

`AmdgpuProcessCache` parses AMDGPU `fdinfo` entries, in both the older
percentage form and the newer nanosecond form, and tracks clients between
updates:

```python
from gpuwatch.amdgpu_fdinfo import AmdgpuProcessCache
from gpuwatch.gpuinfo import GpuProcess

cache = AmdgpuProcessCache()
first = GpuProcess(pid=1234)
cache.parse_fdinfo("0000:03:00.0", [
    "drm-pdev:\t0000:03:00.0\n",
    "drm-client-id:\t7\n",
    "drm-engine-gfx:\t1000000 ns\n",
], first, now=0)
cache.swap()

second = GpuProcess(pid=1234)
cache.parse_fdinfo("0000:03:00.0", [
    "drm-pdev:\t0000:03:00.0\n",
    "drm-client-id:\t7\n",
    "drm-engine-gfx:\t501000000 ns\n",
], second, now=1_000_000_000)
second.gpu_usage   # 50
```

`parse_fdinfo` returns `False` when the entry belongs to a GPU at another PCI
address.

## What the package does not do

- It has no command and no screen; it is a library to build a monitor on.
- It does not open AMD GPUs: there is no AMD vendor to register, no AMD
  device discovery, no clock, memory, temperature, fan or power readings for
  AMD GPUs, and no lookup of AMD marketing names. Only the `fdinfo` parsing of
  `gpuwatch.amdgpu_fdinfo` is there for them.
- It does not walk `/proc/<pid>/fdinfo` itself. The caller reads the `fdinfo`
  files, hands their lines to `IntelGpu.parse_fdinfo` or
  `AmdgpuProcessCache.parse_fdinfo`, appends the resulting `GpuProcess`
  objects to `gpu.processes`, and then calls `refresh_running_processes()`.

## Permissions

Reading another user's `/proc/<pid>/fdinfo` or process details needs the
right to inspect that process. Some sysfs attributes are readable by root
only.