[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "runner-autoscaler"
version = "0.1.0"
description = "Autoscaling logic for self-hosted CI runner fleets: resource models, replica suggestion, webhook-driven scale targets and batched capacity reservations."
requires-python = ">=3.10"
dependencies = []
keywords = [
    "autoscaling",
    "ci",
    "runners",
    "self-hosted",
    "webhook",
    "github-actions",
    "capacity",
    "wsgi",
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
    "Topic :: System :: Distributed Computing",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["runner_autoscaler"]

[tool.hatch.build.targets.sdist]
include = ["runner_autoscaler", "tests"]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.ruff.lint]
select = ["E", "F", "W", "I", "B", "UP", "SIM"]

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
warn_redundant_casts = true
no_implicit_optional = true
check_untyped_defs = true
