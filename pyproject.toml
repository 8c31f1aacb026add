[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "pcipassthru"
version = "0.1.0"
description = "Reconciliation and passthrough management of PCI, SR-IOV, vGPU and USB device objects for cluster nodes"
requires-python = ">=3.10"
keywords = [
    "pci",
    "passthrough",
    "sriov",
    "vgpu",
    "usb",
    "vfio",
    "kubevirt",
    "crd",
    "controller",
]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: System Administrators",
    "Operating System :: POSIX :: Linux",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Systems Administration",
    "Topic :: System :: Hardware",
]
dependencies = [
    "pyyaml",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[tool.hatch.build.targets.wheel]
packages = ["pcipassthru"]

[tool.hatch.build.targets.sdist]
include = [
    "pcipassthru",
    "tests",
    "pyproject.toml",
]

[tool.pytest.ini_options]
testpaths = ["tests"]
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
