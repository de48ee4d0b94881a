"""Makefile-like script for DeployPilot development tasks."""

#!/usr/bin/env python3

import subprocess
import sys

PACKAGE = "deploypilot"
SOURCES = f"{PACKAGE}/ tests/ scripts/"


def run(command: str) -> int:
    """Run a shell command and return exit code."""
    print(f"Running: {command}")
    return subprocess.call(command, shell=True)


def install():
    """Install the package with test tooling."""
    return run("pip install -e '.[dev]'")


def test():
    """Run the suite with coverage."""
    return run(f"pytest tests/ -v --cov={PACKAGE} --cov-report=term-missing")


def test_unit():
    return run("pytest tests/unit/ -v -m unit")


def lint():
    """Run style and type checks, stopping at the first failure."""
    for cmd in (
        f"black --check {SOURCES}",
        f"isort --check {SOURCES}",
        f"flake8 {SOURCES}",
        f"mypy {PACKAGE}/",
    ):
        if run(cmd) != 0:
            return 1
    return 0


def format_code():
    run(f"black {SOURCES}")
    run(f"isort {SOURCES}")


def clean():
    """Remove build and test artifacts."""
    run("rm -rf build/ dist/ *.egg-info .pytest_cache/ .mypy_cache/ .coverage")
    run("find . -type d -name __pycache__ -exec rm -rf {} + 2>/dev/null || true")


def build():
    clean()
    return run("python setup.py sdist bdist_wheel")


COMMANDS = {
    "install": install,
    "test": test,
    "test-unit": test_unit,
    "lint": lint,
    "format": format_code,
    "clean": clean,
    "build": build,
}


if __name__ == "__main__":
    if len(sys.argv) < 2 or sys.argv[1] not in COMMANDS:
        print(f"Usage: python {sys.argv[0]} {{{','.join(COMMANDS)}}}")
        sys.exit(1)

    sys.exit(COMMANDS[sys.argv[1]]() or 0)
