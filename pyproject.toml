[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "bpm"
version = "0.1.0"
description = "Run job processes in isolated runc containers: OCI spec building, bundle management and process lifecycle."
requires-python = ">=3.10"
dependencies = []
keywords = ["runc", "containers", "oci", "seccomp", "process-manager"]
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
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["bpm"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
