[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "audiofetch"
version = "0.1.0"
description = "Ranged, prefetching audio file download with byte-range bookkeeping and AES-128-CTR stream decryption"
requires-python = ">=3.10"
keywords = ["audio", "streaming", "download", "range-set", "aes-ctr", "prefetch"]
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
    "Topic :: Multimedia :: Sound/Audio",
    "Topic :: Software Development :: Libraries :: Python Modules",
]
dependencies = [
    "cryptography",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[tool.hatch.build.targets.wheel]
packages = ["audiofetch"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
