[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "zonelimit"
version = "0.1.0"
description = "Sliding-window HTTP rate limiting by zone and key, with optional distributed state sharing and WSGI middleware"
requires-python = ">=3.10"
dependencies = []
keywords = [
    "rate limiting",
    "rate limit",
    "throttling",
    "wsgi",
    "middleware",
    "sliding window",
    "http 429",
]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Internet :: WWW/HTTP :: WSGI :: Middleware",
    "Typing :: Typed",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["zonelimit"]

[tool.pytest.ini_options]
addopts = "-ra"
testpaths = ["tests"]

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
