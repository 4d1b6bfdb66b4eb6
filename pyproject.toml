[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "egresskit"
version = "1.8.2"
description = "Control-plane toolkit for a media egress service: CPU admission control, handler process supervision, pipeline message handling and metrics."
requires-python = ">=3.10"
dependencies = [
    "psutil",
]
keywords = [
    "egress",
    "recording",
    "streaming",
    "gstreamer",
    "metrics",
    "prometheus",
]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: Developers",
    "Intended Audience :: System Administrators",
    "Operating System :: POSIX",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Multimedia :: Video",
    "Topic :: System :: Monitoring",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[tool.hatch.build.targets.wheel]
packages = ["egresskit"]

[tool.hatch.build.targets.sdist]
include = [
    "egresskit",
    "tests",
]

[tool.pytest.ini_options]
addopts = "-ra"
testpaths = ["tests"]
