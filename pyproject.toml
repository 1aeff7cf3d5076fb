[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "tunmux"
version = "0.26.17"
description = "Stream multiplexing over one connection, with flow-controlled windows, port sharing by protocol sniffing and token-bucket rate limiting."
requires-python = ">=3.10"
dependencies = [
    "psutil",
]
keywords = [
    "multiplexing",
    "tunnel",
    "proxy",
    "flow control",
    "rate limiting",
    "port sharing",
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
    "Topic :: System :: Networking",
    "Topic :: Internet :: Proxy Servers",
    "Topic :: Software Development :: Libraries :: Python Modules",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[tool.hatch.build.targets.wheel]
packages = ["tunmux"]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
