[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "userservers"
version = "0.1.0"
description = "A per-user service supervisor daemon and its control client over a Unix socket"
requires-python = ">=3.10"
dependencies = []
keywords = ["services", "supervisor", "daemon", "process-manager", "unix-socket"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Environment :: Console",
    "Environment :: No Input/Output (Daemon)",
    "Intended Audience :: System Administrators",
    "Operating System :: POSIX",
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

[project.scripts]
userserversd = "userservers.daemon:main"
userserversctl = "userservers.ctl:main"

[tool.hatch.build.targets.wheel]
packages = ["userservers"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
