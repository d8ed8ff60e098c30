[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "baitline"
version = "0.1.0"
description = "Building blocks for phishing-awareness campaigns: recipients, scheduling, mail delivery, report monitoring and restricted outbound connections."
requires-python = ">=3.10"
dependencies = []
keywords = [
    "phishing",
    "security-awareness",
    "email",
    "imap",
    "smtp",
    "wsgi",
    "rate-limiting",
    "ssrf",
]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Information Technology",
    "Intended Audience :: System Administrators",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Communications :: Email",
    "Topic :: Internet :: WWW/HTTP :: WSGI :: Middleware",
    "Topic :: Security",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["baitline"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.ruff.lint]
select = ["E", "F", "W", "I", "B", "UP"]

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
warn_redundant_casts = true
