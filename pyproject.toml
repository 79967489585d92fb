[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "chunkvault"
version = "0.1.0"
description = "Chunked file upload service: an HTTP endpoint opens upload sessions and a TCP endpoint streams chunks to disk with per-chunk acknowledgements."
requires-python = ">=3.10"
dependencies = []
keywords = ["upload", "chunked-upload", "tcp", "file-transfer", "worker-pool"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Environment :: No Input/Output (Daemon)",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Internet :: File Transfer Protocol (FTP)",
    "Topic :: System :: Networking",
]

[project.optional-dependencies]
test = ["pytest"]

[project.scripts]
chunkvault = "chunkvault.app:main"

[tool.hatch.build.targets.wheel]
packages = ["chunkvault"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
