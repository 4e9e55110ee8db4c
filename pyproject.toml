[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "tunnelmux"
version = "3.5.661"
description = "Building blocks for a reverse-tunnel client: stream multiplexing, SOCKS5, FTP passive rewriting, UDP framing, compression and TCP redirection"
requires-python = ">=3.10"
dependencies = [
    "psutil",
]
keywords = [
    "tunnel",
    "reverse-proxy",
    "multiplexing",
    "socks5",
    "ftp",
    "udp",
]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: Developers",
    "Intended Audience :: System Administrators",
    "Operating System :: POSIX",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Internet :: Proxy Servers",
    "Topic :: System :: Networking",
    "Framework :: AsyncIO",
]

[project.optional-dependencies]
test = [
    "pytest",
    "pytest-asyncio",
]

[tool.hatch.build.targets.wheel]
packages = ["tunnelmux"]

[tool.hatch.build.targets.sdist]
include = [
    "tunnelmux",
    "tests",
]

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
