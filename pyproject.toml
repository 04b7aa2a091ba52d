[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "tapenet"
version = "0.2.1"
description = "Local tape and segment store with a JSON-RPC read API, snapshots and Prometheus-style metrics."
requires-python = ">=3.10"
dependencies = []
keywords = ["tape", "segments", "archive", "json-rpc", "metrics", "sqlite", "storage"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Database",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["tapenet"]

[tool.hatch.build.targets.sdist]
include = ["tapenet", "tests"]

[tool.pytest.ini_options]
addopts = "-ra"
