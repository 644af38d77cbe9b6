[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "octoip"
version = "0.1.0"
description = "E1 over IP (OCTOI) building blocks: frame FIFO/RIFO, TDM line handling, protocol messages, UDP sockets and client/server state machines"
requires-python = ">=3.10"
dependencies = []
keywords = ["e1", "tdm", "e1oip", "octoi", "telephony", "udp", "jitter-buffer"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Developers",
    "Intended Audience :: Telecommunications Industry",
    "Operating System :: POSIX",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Communications :: Telephony",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["octoip"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
