[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "ofiplugin"
version = "0.1.0"
description = "Platform configuration, NIC rail ordering and PCI topology grouping for multi-node GPU communication over libfabric"
requires-python = ">=3.10"
dependencies = []
keywords = ["topology", "efa", "libfabric", "pcie", "nic", "rails", "distributed"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: Developers",
    "Intended Audience :: System Administrators",
    "Operating System :: POSIX :: Linux",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Distributed Computing",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["ofiplugin"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
