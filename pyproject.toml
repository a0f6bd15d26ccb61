[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "pygnet"
version = "0.1.0"
description = "Event-driven networking client with frame codecs, buffered connections and a selector event loop"
requires-python = ">=3.10"
dependencies = []
keywords = ["networking", "event-loop", "codec", "tcp", "udp", "framing"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: Developers",
    "Operating System :: POSIX",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Networking",
    "Topic :: Software Development :: Libraries :: Python Modules",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["pygnet"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
