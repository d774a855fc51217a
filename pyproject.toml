[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "gpuwatch"
version = "0.1.0"
description = "GPU information model, sysfs device discovery and DRM fdinfo parsing for Intel and AMD GPUs on Linux"
requires-python = ">=3.10"
dependencies = [
    "psutil",
]
keywords = ["gpu", "monitoring", "intel", "i915", "amdgpu", "drm", "fdinfo", "sysfs", "pcie"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: System Administrators",
    "Intended Audience :: Developers",
    "Operating System :: POSIX :: Linux",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Monitoring",
    "Topic :: System :: Hardware",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[tool.hatch.build.targets.wheel]
packages = ["gpuwatch"]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.ruff.lint]
select = ["E", "F", "W", "I", "B", "UP"]

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
warn_redundant_casts = true
