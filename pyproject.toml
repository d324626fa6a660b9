[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "slabcache"
version = "0.1.0"
description = "Slab allocator, slab rebalancing, key hashing, prefix statistics and watcher logging for an in-memory cache server"
requires-python = ">=3.10"
dependencies = []
keywords = [
    "cache",
    "slab allocator",
    "memory",
    "jenkins hash",
    "murmur3",
    "statistics",
    "logging",
]
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
    "Topic :: Database :: Database Engines/Servers",
    "Topic :: Software Development :: Libraries :: Python Modules",
]

[project.optional-dependencies]
test = [
    "pytest",
    "hypothesis",
]

[tool.hatch.build.targets.wheel]
packages = ["slabcache"]

[tool.hatch.build.targets.sdist]
include = [
    "slabcache",
    "tests",
    "pyproject.toml",
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
