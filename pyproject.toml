[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "semfirewall"
version = "0.1.0"
description = "Structural function topologies and signature-based semantic malware scanning with a persistent signature store"
requires-python = ">=3.10"
dependencies = [
    "lmdb",
]
keywords = ["malware", "signatures", "topology", "static-analysis", "scanner", "lmdb"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: Developers",
    "Intended Audience :: Information Technology",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Security",
    "Topic :: Software Development :: Quality Assurance",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[tool.hatch.build.targets.wheel]
packages = ["semfirewall"]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
