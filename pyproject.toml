[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "ngmon"
version = "0.1.0"
description = "Monitoring server that keeps Top SQL metadata and serves queries and runtime configuration over HTTP"
requires-python = ">=3.11"
dependencies = []
keywords = ["monitoring", "top-sql", "metrics", "profiling", "configuration", "wsgi"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Environment :: Console",
    "Intended Audience :: System Administrators",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Monitoring",
]

[project.optional-dependencies]
test = ["pytest"]

[project.scripts]
ngmon = "ngmon.cli:main"

[tool.hatch.build.targets.wheel]
packages = ["ngmon"]

[tool.pytest.ini_options]
addopts = "-ra"
