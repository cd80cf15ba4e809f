[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "jbpmn"
version = "0.1.0"
description = "A small JSON-defined workflow engine with forms, gateways, scripts, signals and timeouts, served over HTTP"
requires-python = ">=3.10"
keywords = ["workflow", "bpmn", "process", "engine", "forms", "signals", "sqlite", "flask"]
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
    "Framework :: Flask",
    "Topic :: Office/Business :: Groupware",
    "Topic :: Internet :: WWW/HTTP :: WSGI :: Application",
]
dependencies = [
    "flask",
    "werkzeug",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[project.scripts]
jbpmn = "jbpmn.server:main"

[tool.hatch.build.targets.wheel]
packages = ["jbpmn"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.mypy]
python_version = "3.10"
ignore_missing_imports = true
