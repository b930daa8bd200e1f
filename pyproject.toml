[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "eventsink"
version = "0.1.18.dev0"
description = "Output stages for a log event pipeline: stdout, files, sockets, HTTP, Redis, e-mail, AMQP and Prometheus metrics."
requires-python = ">=3.10"
keywords = [
    "logging",
    "log-shipping",
    "pipeline",
    "events",
    "redis",
    "amqp",
    "prometheus",
]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Developers",
    "Intended Audience :: System Administrators",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Logging",
]
dependencies = [
    "redis",
    "pika",
    "requests",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[tool.hatch.build.targets.wheel]
packages = ["eventsink"]

[tool.hatch.build.targets.sdist]
include = [
    "eventsink",
    "tests",
]

[tool.pytest.ini_options]
addopts = "-ra"
testpaths = ["tests"]

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.ruff.lint]
select = ["E", "F", "W", "I", "B", "UP"]

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
warn_redundant_casts = true
