[build-system]
requires = ["setuptools>=64"]
build-backend = "setuptools.build_meta"

[project]
name = "nvshelf"
version = "0.1.0"
description = "File-backed shelves, pools and atomic shared-memory primitives for a fabric-attached memory manager"
requires-python = ">=3.10"
dependencies = [
    "pyyaml",
]
keywords = ["shared memory", "mmap", "persistent memory", "shelf", "pool", "atomics"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Developers",
    "Operating System :: POSIX :: Linux",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Filesystems",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[tool.setuptools.packages.find]
include = ["nvshelf*"]

[tool.pytest.ini_options]
addopts = "-ra"
