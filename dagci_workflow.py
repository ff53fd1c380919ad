# dagci_workflow.py
# Workflow for checking dagci itself: lint and format first, then the test matrix.
from __future__ import annotations

from dagci.dsl import job, matrix, on_pull_request, on_push, pipeline, sh


def workflow():
    return pipeline(
        "dagci",
        # Lint job - runs ruff on the codebase
        job(
            "lint",
            sh("Ruff check", "ruff check src tests"),
        ),

        # Format check job - ensures code is properly formatted
        job(
            "format-check",
            sh("Ruff format check", "ruff format --check src tests"),
        ),

        # Test job - one instance per interpreter
        job(
            "test",
            sh("Install package", "python${{ matrix.python }} -m pip install -e '.[test]'"),
            sh("Run pytest", "python${{ matrix.python }} -m pytest -q"),
            name="Tests",
            needs=["lint", "format-check"],
            matrix=matrix(python=["3.10", "3.11", "3.12"]),
            max_parallel=2,
        ),

        # Config check - validates project configuration
        job(
            "config-check",
            sh("Validate pyproject.toml", "python -c 'import tomllib; tomllib.load(open(\"pyproject.toml\", \"rb\"))'"),
            needs=["test"],
        ),
        on=[on_push("main", "*.*.x"), on_pull_request()],
    )
