[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "noderouter"
version = "0.1.0"
description = "Peer bookkeeping, message caching and block-sync planning for a peer-to-peer node router"
requires-python = ">=3.10"
dependencies = []
keywords = ["p2p", "networking", "router", "peers", "sync", "block-sync"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Networking",
    "Typing :: Typed",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["noderouter"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"
