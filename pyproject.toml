[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "ekco"
version = "0.1.0"
description = "Reconcile logic that keeps an embedded Kubernetes cluster and its Rook-Ceph storage in step as nodes come and go"
requires-python = ">=3.10"
dependencies = [
    "semver",
]
keywords = [
    "kubernetes",
    "operator",
    "rook",
    "ceph",
    "reconcile",
    "cluster",
]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: System Administrators",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Clustering",
    "Topic :: System :: Systems Administration",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[tool.hatch.build.targets.wheel]
packages = ["ekco"]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
