# relayci_workflow.py
# relayci's own pipeline, written with the python DSL.
from __future__ import annotations

from relayci.dsl import download, job, matrix, pipeline, sh, triggers, upload, uses


def workflow():
    return pipeline(
        "relayci",
        # Lint job - runs ruff on the codebase
        job(
            "lint",
            uses("Ruff check", "lint", {"tool": "ruff", "args": "check", "files": ["src/", "tests/"]}),
        ),

        # Test matrix - one job per interpreter, all after lint
        matrix("python", ["3.11", "3.12"]).jobs(
            lambda v: job(
                f"test-py{v}",
                sh("Run pytest", f"uv run --python {v} --extra test pytest -q"),
                needs=["lint"],
                timeout=20 * 60,
            )
        ),

        job(
            "build",
            sh("Build wheel", "python -m pip wheel --no-deps -w dist ."),
            upload("dist", "dist/"),
            needs=["test-py3.11", "test-py3.12"],
        ),

        # Publish only from main
        job(
            "publish",
            download("dist"),
            sh("Upload", 'python -m twine upload --non-interactive -p "$PYPI_TOKEN" dist/*'),
            needs=["build"],
            condition="event.branch == 'main'",
            secrets=["PYPI_TOKEN"],
        ),
        on=triggers(push=["main"], pull_request=["main"], dispatch=True),
    )
