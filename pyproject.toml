[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "hatchflight"
version = "0.1.0"
description = "Flight SQL style request handlers for queries, transactions, prepared statements and metadata"
requires-python = ">=3.10"
dependencies = []
keywords = ["flight-sql", "sql", "handlers", "columnar", "database"]
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
    "Topic :: Database :: Front-Ends",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["hatchflight"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
