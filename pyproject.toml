[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "azmachine"
version = "0.1.0"
description = "Azure machine provisioning helpers: VM, network, subnet and extension services, a TTL LRU cache, event recording and a spot-instance termination handler."
requires-python = ">=3.10"
dependencies = [
    "cryptography",
]
keywords = ["azure", "azure-stack-hub", "virtual-machines", "spot", "cache", "kubernetes"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: Developers",
    "Intended Audience :: System Administrators",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Clustering",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[tool.hatch.build.targets.wheel]
packages = ["azmachine"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"
