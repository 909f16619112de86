[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "nodesetkit"
version = "0.3.0"
description = "Identity, deletion ordering, volume-claim ownership and Slurm node control for NodeSet pods"
requires-python = ">=3.10"
dependencies = []
keywords = ["slurm", "kubernetes", "nodeset", "hpc", "cluster", "hostlist", "persistent-volume-claim"]
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
    "Topic :: System :: Clustering",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["nodesetkit"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"
