[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "trafficreplay"
version = "1.3.0"
description = "Building blocks for recording and replaying HTTP traffic: payload framing, byte-level HTTP helpers, TCP packet reassembly, size parsing and settings."
requires-python = ">=3.10"
dependencies = []
keywords = [
    "http",
    "traffic",
    "replay",
    "tcp",
    "reassembly",
    "pcap",
]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: Developers",
    "Intended Audience :: System Administrators",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Internet :: WWW/HTTP",
    "Topic :: System :: Networking :: Monitoring",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["trafficreplay"]

[tool.hatch.build.targets.sdist]
include = ["trafficreplay", "tests", "pyproject.toml", "README.md"]

[tool.pytest.ini_options]
addopts = "-ra"
testpaths = ["tests"]
