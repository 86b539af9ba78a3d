[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "txpool"
version = "0.1.0"
description = "Priority transaction mempool with an LRU seen-cache, a concurrent linked list and application check hooks"
requires-python = ">=3.10"
dependencies = []
keywords = ["mempool", "transactions", "blockchain", "rollup", "abci", "lru-cache", "priority-queue"]
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
    "Topic :: System :: Distributed Computing",
    "Typing :: Typed",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["txpool"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
