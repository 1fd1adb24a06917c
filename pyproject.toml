[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "taskweave"
version = "0.1.0"
description = "A work-stealing task scheduler with worker threads, cooperative waiting, wait groups and allocation tracking."
requires-python = ">=3.10"
dependencies = []
keywords = ["scheduler", "tasks", "threads", "concurrency", "waitgroup", "work-stealing", "fibers"]
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
    "Topic :: Software Development :: Libraries",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["taskweave"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
