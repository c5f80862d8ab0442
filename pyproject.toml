[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "servicekit"
version = "0.1.0"
description = "Building blocks for services: circuit breaker, caching, service discovery, event envelopes and an in-process message broker."
requires-python = ">=3.10"
dependencies = [
    "redis",
]
keywords = [
    "circuit-breaker",
    "cache",
    "service-discovery",
    "consul",
    "event-driven",
    "outbox",
    "message-broker",
    "microservices",
]
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
    "Topic :: Software Development :: Libraries :: Application Frameworks",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[tool.hatch.build.targets.wheel]
packages = ["servicekit"]

[tool.hatch.build.targets.sdist]
include = [
    "servicekit",
    "tests",
]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
