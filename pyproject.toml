[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "percas"
version = "0.2.1"
description = "Building blocks for a persistent cache node: configuration, a disk-backed cache engine, gossip membership, consistent hashing and an HTTP client."
requires-python = ">=3.11"
keywords = ["cache", "persistent-cache", "key-value", "gossip", "consistent-hashing", "cluster"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: Developers",
    "Intended Audience :: System Administrators",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Framework :: AsyncIO",
    "Topic :: Database :: Database Engines/Servers",
    "Topic :: System :: Distributed Computing",
]
dependencies = [
    "aiohttp>=3.9",
    "psutil>=5.9",
]

[project.optional-dependencies]
test = [
    "pytest>=7.4",
    "pytest-asyncio>=0.23",
]

[tool.hatch.build.targets.wheel]
packages = ["percas"]

[tool.hatch.build.targets.sdist]
include = ["percas", "tests", "pyproject.toml"]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py311"

[tool.ruff.lint]
select = ["E", "F", "I", "B", "UP"]

[tool.mypy]
python_version = "3.11"
warn_unused_ignores = true
warn_redundant_casts = true
