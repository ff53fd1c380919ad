"""
Shared pytest fixtures for dagci tests.
"""

from __future__ import annotations

import threading
from collections import defaultdict
from pathlib import Path

import pytest

from dagci.steps import StepContext, StepResult
from dagci.ui.console import Console

DATA_DIR = Path(__file__).parent / "data"


class FakeRunner:
    """
    Deterministic stand-in for the shell runner.

    fail: instance ids, template ids or step names that should fail.
    delay: seconds each step takes; cancellation cuts the wait short.
    """

    def __init__(self, fail=(), delay: float = 0.0, raise_on=()):
        self.fail = set(fail)
        self.raise_on = set(raise_on)
        self.delay = delay
        self.calls: list[tuple[str, str]] = []
        self.started: list[str] = []
        self.active = 0
        self.max_active = 0
        self.active_per_template: dict[str, int] = defaultdict(int)
        self.max_per_template: dict[str, int] = defaultdict(int)
        self._lock = threading.Lock()

    def run_step(self, step, context: StepContext) -> StepResult:
        template_id = context.job_id.split("[", 1)[0]
        with self._lock:
            self.calls.append((context.job_id, step.name))
            if context.job_id not in self.started:
                self.started.append(context.job_id)
            self.active += 1
            self.max_active = max(self.max_active, self.active)
            self.active_per_template[template_id] += 1
            self.max_per_template[template_id] = max(
                self.max_per_template[template_id], self.active_per_template[template_id]
            )
        try:
            if self.delay:
                context.cancelled.wait(self.delay)
            if context.cancelled.is_set():
                return StepResult.failure("cancelled")
            if step.name in self.raise_on:
                raise RuntimeError(f"{step.name} exploded")
            if {context.job_id, template_id, step.name} & self.fail:
                return StepResult.failure("boom", exit_code=1)
            return StepResult.success()
        finally:
            with self._lock:
                self.active -= 1
                self.active_per_template[template_id] -= 1


class BarrierRunner(FakeRunner):
    """The listed jobs only pass if all of them reach their first step at once."""

    def __init__(self, together, timeout: float = 5.0):
        super().__init__()
        self.together = set(together)
        self.barrier = threading.Barrier(len(together), timeout=timeout)
        self._entered: set[str] = set()

    def run_step(self, step, context: StepContext) -> StepResult:
        with self._lock:
            first = context.job_id in self.together and context.job_id not in self._entered
            self._entered.add(context.job_id)
        if first:
            try:
                self.barrier.wait()
            except threading.BrokenBarrierError:
                return StepResult.failure("jobs were not running together")
        return super().run_step(step, context)


@pytest.fixture
def console():
    return Console(quiet=True)


@pytest.fixture
def fake_runner():
    return FakeRunner()


@pytest.fixture
def integrate_yml() -> Path:
    return DATA_DIR / "integrate.yml"

