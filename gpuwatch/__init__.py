"""GPU information model, sysfs device discovery, Intel GPU support and AMDGPU fdinfo parsing on Linux."""

__version__ = "0.1.0"