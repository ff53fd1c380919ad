"""
End-to-end runs of the Integrate workflow (8 jobs, 13 instances) with a fake step runner.
"""

import pytest

from conftest import BarrierRunner, FakeRunner
from dagci import RunConfig, run_pipeline
from dagci.definition import load_definition
from dagci.model import JobStatus, RunVerdict
from dagci.trigger import Event

ROOTS = ("byte_level", "syntax_errors")
DEPENDENTS = ("php_tests", "js_tests", "static_analysis", "coding_standards", "rector_checkstyle", "exported_files")


@pytest.fixture
def integrate(integrate_yml):
    return load_definition(integrate_yml)


def _push(branch="1.2.x"):
    return Event(kind="push", branch=branch)


def test_release_branch_push_runs_everything(integrate, console):
    runner = FakeRunner()
    report = run_pipeline(integrate, _push(), runner=runner, console=console)

    assert report.triggered
    assert report.verdict is RunVerdict.SUCCESS
    assert len(report.jobs) == 13
    assert report.counts == {"succeeded": 13}
    assert report.job("js_tests[operating-system=ubuntu-latest,php-version=8.2]").status is JobStatus.SUCCEEDED
    php = [j for j in report.jobs if j.id.startswith("php_tests[")]
    assert len(php) == 6
    assert php[0].name.endswith("(ubuntu-latest, 8.1, lowest)")


def test_dependents_start_after_both_roots(integrate, console):
    runner = FakeRunner(delay=0.01)
    run_pipeline(integrate, _push(), runner=runner, console=console)

    last_root_call = max(i for i, (job, _) in enumerate(runner.calls) if job in ROOTS)
    first_dependent_call = min(i for i, (job, _) in enumerate(runner.calls) if job not in ROOTS)
    assert last_root_call < first_dependent_call


def test_roots_run_concurrently(integrate, console):
    runner = BarrierRunner(ROOTS)
    report = run_pipeline(integrate, _push(), runner=runner, console=console)
    assert report.verdict is RunVerdict.SUCCESS


def test_matrix_jobs_respect_worker_limit(integrate, console):
    runner = FakeRunner(delay=0.01)
    report = run_pipeline(integrate, _push(), runner=runner, config=RunConfig(max_workers=3), console=console)
    assert report.verdict is RunVerdict.SUCCESS
    assert runner.max_active <= 3


def test_syntax_error_skips_all_dependents(integrate, console):
    runner = FakeRunner(fail={"syntax_errors"})
    report = run_pipeline(integrate, _push(), runner=runner, console=console)

    assert report.verdict is RunVerdict.FAILURE
    assert report.exit_code == 1
    assert report.job("byte_level").status is JobStatus.SUCCEEDED
    assert report.job("syntax_errors").status is JobStatus.FAILED
    skipped = [j for j in report.jobs if j.id.split("[", 1)[0] in DEPENDENTS]
    assert len(skipped) == 11
    assert all(j.status is JobStatus.SKIPPED for j in skipped)
    assert {job for job, _ in runner.calls} == set(ROOTS)


def test_one_failing_matrix_cell_does_not_stop_siblings(integrate, console):
    failing = "php_tests[operating-system=ubuntu-latest,php-version=8.3,dependencies=lowest]"
    runner = FakeRunner(fail={failing})
    report = run_pipeline(integrate, _push(), runner=runner, console=console)

    assert report.verdict is RunVerdict.FAILURE
    assert report.job(failing).status is JobStatus.FAILED
    assert report.counts == {"succeeded": 12, "failed": 1}


@pytest.mark.parametrize("branch", ["main", "feature/1.2.x", "1.2"])
def test_non_release_push_is_ignored(integrate, console, branch):
    runner = FakeRunner()
    report = run_pipeline(integrate, _push(branch), runner=runner, console=console)

    assert not report.triggered
    assert report.verdict is RunVerdict.SUCCESS
    assert report.jobs == []
    assert runner.calls == []


def test_pull_request_opened_runs(integrate, console):
    report = run_pipeline(
        integrate, Event(kind="pull_request", action="opened"), runner=FakeRunner(), console=console
    )
    assert report.triggered
    assert report.verdict is RunVerdict.SUCCESS


def test_pull_request_closed_is_ignored(integrate, console):
    report = run_pipeline(
        integrate, Event(kind="pull_request", action="closed"), runner=FakeRunner(), console=console
    )
    assert not report.triggered
