[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "initrdtools"
version = "0.1.0"
description = "Tools to inspect, extract and populate initramfs images and to select kernel modules"
requires-python = ">=3.10"
dependencies = [
    "zstandard",
]
keywords = ["initramfs", "initrd", "cpio", "boot", "kernel-modules"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Environment :: Console",
    "Intended Audience :: System Administrators",
    "Operating System :: POSIX :: Linux",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Boot",
    "Topic :: System :: Archiving",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[project.scripts]
initrd-ls = "initrdtools.ls:main"
initrd-extract = "initrdtools.extract:main"
initrd-put = "initrdtools.put_install:main"
initrd-scanmod = "initrdtools.scanmod:main"

[tool.hatch.build.targets.wheel]
packages = ["initrdtools"]

[tool.pytest.ini_options]
addopts = "-ra"
