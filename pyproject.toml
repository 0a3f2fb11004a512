[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "bag2influx"
version = "0.1.0"
description = "Turn recorded robot messages into InfluxDB line protocol and write them to an InfluxDB 2 bucket"
requires-python = ">=3.10"
keywords = ["influxdb", "line-protocol", "rosbag", "ros2", "time-series"]
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
dependencies = [
    "requests",
]

[project.optional-dependencies]
test = [
    "pytest",
    "responses",
]

[tool.hatch.build.targets.wheel]
packages = ["bag2influx"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"

[tool.ruff]
line-length = 88
target-version = "py310"
