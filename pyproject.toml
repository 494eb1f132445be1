[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "brokerlet"
version = "0.1.0"
description = "A small asyncio MQTT broker speaking MQTT 3.1.1 and MQTT 5.0"
requires-python = ">=3.10"
dependencies = []
keywords = ["mqtt", "broker", "asyncio", "pubsub", "iot", "messaging"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Framework :: AsyncIO",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Communications",
    "Topic :: Internet",
    "Topic :: System :: Networking",
]

[project.optional-dependencies]
test = [
    "pytest",
    "pytest-asyncio",
]

[project.scripts]
brokerlet = "brokerlet.cli:main"

[tool.hatch.build.targets.wheel]
packages = ["brokerlet"]

[tool.hatch.build.targets.sdist]
include = ["brokerlet", "tests"]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.ruff.lint]
select = ["E", "F", "W", "I", "B", "UP"]

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
warn_redundant_casts = true
