[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "ppmerge"
version = "0.1.0"
description = "Compact merging of pprof and goroutine profiles into a single deduplicated container, with lossless unpacking"
requires-python = ">=3.10"
dependencies = []
keywords = ["pprof", "profiling", "profile", "merge", "goroutine", "protobuf"]
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
    "Topic :: Software Development :: Libraries",
    "Topic :: System :: Monitoring",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["ppmerge"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
