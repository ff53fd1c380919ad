"""Tests for the scheduler/executor."""

from __future__ import annotations

import threading
import time

import pytest

from conftest import BarrierRunner, FakeRunner
from dagci.config import RunConfig
from dagci.dag import build_graph
from dagci.dsl import job, sh
from dagci.model import JobStatus, RunVerdict
from dagci.runner import CancelToken, Scheduler, execute_instance, run_graph
from dagci.steps import ShellStepRunner, StepContext, StepFailure, StepResult


def _job(id, needs=(), matrix=None, steps=None, **kw):
    steps = steps or [sh("step", "true")]
    return job(id, *steps, needs=list(needs), matrix=matrix, **kw)


def _run(jobs, runner, console, **config):
    graph = build_graph(jobs)
    report = run_graph(graph, runner, RunConfig(**config), console=console)
    return graph, report


class TestHappyPath:
    def test_everything_succeeds(self, fake_runner, console):
        graph, report = _run([_job("a"), _job("b", ["a"]), _job("c", ["b"])], fake_runner, console)
        assert report.verdict is RunVerdict.SUCCESS
        assert report.exit_code == 0
        assert fake_runner.started == ["a", "b", "c"]
        assert all(i.status is JobStatus.SUCCEEDED for i in graph)

    def test_dependent_starts_after_every_dependency(self, console):
        runner = FakeRunner(delay=0.02)
        jobs = [_job("a", matrix={"v": ["1", "2"]}), _job("b", ["a"])]
        graph, report = _run(jobs, runner, console)
        assert report.verdict is RunVerdict.SUCCESS
        b = graph["b"]
        assert len(b.needs) == 2
        for dep in b.needs:
            assert graph[dep].finished_at <= b.started_at

    def test_empty_graph_succeeds(self, fake_runner, console):
        graph, report = _run([_job("a", matrix={"v": []})], fake_runner, console)
        assert len(graph) == 0
        assert report.verdict is RunVerdict.SUCCESS
        assert report.empty_jobs == ["a"]

    def test_steps_run_in_order(self, fake_runner, console):
        steps = [sh("one", "true"), sh("two", "true"), sh("three", "true")]
        _run([_job("a", steps=steps)], fake_runner, console)
        assert fake_runner.calls == [("a", "one"), ("a", "two"), ("a", "three")]


class TestFailures:
    def test_first_failing_step_aborts_the_job(self, console):
        runner = FakeRunner(fail={"two"})
        steps = [sh("one", "true"), sh("two", "false"), sh("three", "true")]
        graph, report = _run([_job("a", steps=steps)], runner, console)
        assert runner.calls == [("a", "one"), ("a", "two")]
        assert graph["a"].status is JobStatus.FAILED
        assert "two" in graph["a"].reason
        assert report.verdict is RunVerdict.FAILURE
        assert report.exit_code == 1

    def test_failure_skips_dependents_transitively(self, console):
        runner = FakeRunner(fail={"a"})
        jobs = [_job("a"), _job("b", ["a"]), _job("c", ["b"]), _job("d")]
        graph, report = _run(jobs, runner, console)
        assert graph["a"].status is JobStatus.FAILED
        assert graph["b"].status is JobStatus.SKIPPED
        assert graph["c"].status is JobStatus.SKIPPED
        assert "b" in graph["c"].reason
        # unrelated branch keeps going
        assert graph["d"].status is JobStatus.SUCCEEDED
        assert "b" not in runner.started and "c" not in runner.started

    def test_one_failed_matrix_instance_skips_broadcast_dependent(self, console):
        runner = FakeRunner(fail={"a[v=2]"})
        graph, _ = _run([_job("a", matrix={"v": ["1", "2"]}), _job("b", ["a"])], runner, console)
        assert graph["a[v=1]"].status is JobStatus.SUCCEEDED
        assert graph["b"].status is JobStatus.SKIPPED

    def test_exception_from_runner_fails_the_job(self, console):
        runner = FakeRunner(raise_on={"step"})
        graph, report = _run([_job("a")], runner, console)
        assert graph["a"].status is JobStatus.FAILED
        assert "RuntimeError" in graph["a"].reason

    def test_step_failure_exception(self, console):
        class Raising:
            def run_step(self, step, context):
                raise StepFailure(job=context.job_id, step=step.name, cmd="make", exit_code=2)

        graph, _ = _run([_job("a")], Raising(), console)
        assert graph["a"].status is JobStatus.FAILED
        assert "exit=2" in graph["a"].reason

    def test_blocked_by_empty_template_is_skipped(self, fake_runner, console):
        graph, report = _run([_job("a", matrix={"v": []}), _job("b", ["a"]), _job("c", ["b"])], fake_runner, console)
        assert graph["b"].status is JobStatus.SKIPPED
        assert "produced no instances" in graph["b"].reason
        assert graph["c"].status is JobStatus.SKIPPED
        assert fake_runner.calls == []
        assert report.verdict is RunVerdict.FAILURE


class TestConcurrency:
    def test_slot_limit_is_respected(self, console):
        runner = FakeRunner(delay=0.05)
        jobs = [_job(f"j{i}") for i in range(5)]
        graph = build_graph(jobs)
        scheduler = Scheduler(graph, runner, RunConfig(max_workers=2), console=console)
        scheduler.run()
        assert runner.max_active <= 2
        assert scheduler.max_running <= 2
        assert all(i.status is JobStatus.SUCCEEDED for i in graph)

    def test_roots_run_together(self, console):
        runner = BarrierRunner({"byte_level", "syntax_errors"})
        jobs = [_job("byte_level"), _job("syntax_errors"), _job("php_tests", ["byte_level", "syntax_errors"])]
        graph, report = _run(jobs, runner, console)
        assert report.verdict is RunVerdict.SUCCESS
        assert runner.started[-1] == "php_tests"

    def test_unlimited_runs_everything_at_once(self, console):
        ids = [f"j{i}" for i in range(6)]
        runner = BarrierRunner(set(ids))
        _, report = _run([_job(i) for i in ids], runner, console)
        assert report.verdict is RunVerdict.SUCCESS

    def test_max_parallel_caps_one_template(self, console):
        runner = FakeRunner(delay=0.03)
        jobs = [_job("t", matrix={"v": ["1", "2", "3", "4"]}, max_parallel=1), _job("other")]
        graph, report = _run(jobs, runner, console)
        assert report.verdict is RunVerdict.SUCCESS
        assert runner.max_per_template["t"] == 1

    def test_fail_fast_skips_waiting_siblings(self, console):
        runner = FakeRunner(fail={"t[v=1]"})
        jobs = [_job("t", matrix={"v": ["1", "2", "3"]}, fail_fast=True)]
        graph, _ = _run(jobs, runner, console, max_workers=1)
        assert graph["t[v=1]"].status is JobStatus.FAILED
        assert graph["t[v=2]"].status is JobStatus.SKIPPED
        assert graph["t[v=3]"].status is JobStatus.SKIPPED
        assert "fail-fast" in graph["t[v=2]"].reason

    def test_without_fail_fast_siblings_continue(self, console):
        runner = FakeRunner(fail={"t[v=1]"})
        graph, _ = _run([_job("t", matrix={"v": ["1", "2"]})], runner, console, max_workers=1)
        assert graph["t[v=2]"].status is JobStatus.SUCCEEDED


class TestCancellation:
    def test_cancel_drains_the_run(self, console):
        runner = FakeRunner(delay=5)
        cancel = CancelToken()
        graph = build_graph([_job("slow"), _job("after", ["slow"])])
        timer = threading.Timer(0.1, cancel.cancel, args=("stop requested",))
        timer.start()
        try:
            report = run_graph(graph, runner, RunConfig(), cancel=cancel, console=console)
        finally:
            timer.cancel()
        assert report.cancelled
        assert report.verdict is RunVerdict.FAILURE
        assert graph["slow"].status is JobStatus.FAILED
        assert graph["slow"].reason == "stop requested"
        assert graph["after"].status is JobStatus.SKIPPED

    def test_timeout_stops_shell_children(self, console, tmp_path):
        shell = ShellStepRunner(tmp_path, poll_interval=0.05)
        graph = build_graph([_job("slow", steps=[sh("sleep", "sleep 10; echo done")])])
        began = time.monotonic()
        report = run_graph(graph, shell, RunConfig(timeout=0.3), console=console)
        assert report.cancelled
        deadline = time.monotonic() + 5
        while any(t.name.startswith("dagci") for t in threading.enumerate()) and time.monotonic() < deadline:
            time.sleep(0.05)
        assert not any(t.name.startswith("dagci") for t in threading.enumerate())
        assert time.monotonic() - began < 5

    def test_cancel_before_start_skips_everything(self, fake_runner, console):
        cancel = CancelToken()
        cancel.cancel()
        graph = build_graph([_job("a"), _job("b", ["a"])])
        report = run_graph(graph, fake_runner, cancel=cancel, console=console)
        assert fake_runner.calls == []
        assert {i.status for i in graph} == {JobStatus.SKIPPED}
        assert report.verdict is RunVerdict.FAILURE

    def test_timeout_behaves_like_cancel(self, console):
        runner = FakeRunner(delay=5)
        graph = build_graph([_job("slow"), _job("after", ["slow"]), _job("quick")])
        report = run_graph(graph, runner, RunConfig(timeout=0.2), console=console)
        assert report.cancelled
        assert "timed out" in graph["slow"].reason
        assert graph["after"].status is JobStatus.SKIPPED

    def test_cancel_token_is_idempotent(self):
        token = CancelToken()
        calls = []
        unsubscribe = token.subscribe(lambda: calls.append(1))
        token.cancel("first")
        token.cancel("second")
        unsubscribe()
        assert token.cancelled
        assert token.reason == "first"
        assert calls == [1]


class TestExecuteInstance:
    def test_stops_when_cancelled_between_steps(self, console):
        graph = build_graph([_job("a", steps=[sh("one", "true"), sh("two", "true")])])
        ctx = StepContext(job_id="a", job_name="a")
        ctx.cancelled.set()
        outcome = execute_instance(graph["a"], FakeRunner(), ctx, console)
        assert not outcome.ok
        assert outcome.reason == "cancelled"

    def test_context_carries_matrix_and_env(self, console):
        seen = {}

        class Recording:
            def run_step(self, step, context):
                seen.update(matrix=context.matrix, env=context.env, runs_on=context.runs_on)
                return StepResult.success()

        jobs = [_job("a", matrix={"v": ["1"]}, env={"V": "${{ matrix.v }}"}, runs_on="ubuntu-latest")]
        _run(jobs, Recording(), console)
        assert seen == {"matrix": {"v": "1"}, "env": {"V": "1"}, "runs_on": "ubuntu-latest"}


@pytest.mark.parametrize("width", [1, 3])
def test_diamond_terminates(width, console):
    runner = FakeRunner()
    jobs = [
        _job("setup"),
        _job("lint", ["setup"]),
        _job("unit", ["setup"], matrix={"v": [str(i) for i in range(width)]}),
        _job("package", ["lint", "unit"]),
        _job("e2e", ["package"]),
    ]
    graph, report = _run(jobs, runner, console, max_workers=2)
    assert graph.unfinished() == []
    assert report.verdict is RunVerdict.SUCCESS
    assert runner.started.index("package") > runner.started.index("lint")
