# src/dagci/dsl.py
from __future__ import annotations

from dataclasses import replace
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

from .model import CorrelationPolicy, JobTemplate, Pipeline, Step
from .trigger import DEFAULT_PR_TYPES, TriggerConfig


# ---------------------------------------------------------------------
# Step helpers
# ---------------------------------------------------------------------

def sh(name: str, cmd: str, *, cwd: str | None = None, env: Optional[Dict[str, str]] = None) -> Step:
    """Create a shell step."""
    return Step(name=name, run=cmd, cwd=cwd, env=env or {})


def uses(name: str, action: str, **inputs: Any) -> Step:
    """Create a step that invokes an external action, e.g. uses("Checkout", "actions/checkout@v4")."""
    return Step(name=name, uses=action, with_={k.replace("_", "-"): str(v) for k, v in inputs.items()})


# ---------------------------------------------------------------------
# Matrix
# ---------------------------------------------------------------------

def matrix(axes: Optional[Mapping[str, Iterable[Any]]] = None, **more: Iterable[Any]) -> Dict[str, List[Any]]:
    """
    Build matrix axes. Axis order is declaration order.

    Example:
        matrix({"php-version": ["8.1", "8.2"]}, dependencies=["lowest", "highest"])
    """
    out: Dict[str, List[Any]] = {}
    for key, values in list((axes or {}).items()) + list(more.items()):
        out[key] = list(values)
    return out


# ---------------------------------------------------------------------
# Functional Job helper
# ---------------------------------------------------------------------

def job(
    id: str,
    *steps: Step,  # allow: job("x", sh(...), sh(...))
    steps_list: Optional[List[Step]] = None,  # allow: job("x", steps_list=[...])
    name: str = "",
    needs: Optional[Sequence[str]] = None,
    matrix: Optional[Mapping[str, Iterable[Any]]] = None,
    runs_on: str | None = None,
    env: Optional[Dict[str, str]] = None,
    cwd: str | None = None,  # default cwd applied to steps missing cwd
    correlate: Optional[bool] = None,
    fail_fast: bool = False,
    max_parallel: int | None = None,
) -> JobTemplate:
    steps_final: List[Step] = []
    if steps_list:
        steps_final.extend(list(steps_list))
    steps_final.extend(list(steps))

    if not steps_final:
        raise ValueError(f"job({id!r}) must have at least one step")

    if cwd is not None:
        steps_final = [s if s.cwd is not None else replace(s, cwd=cwd) for s in steps_final]

    correlation = None
    if correlate is not None:
        correlation = CorrelationPolicy.CORRELATED if correlate else CorrelationPolicy.BROADCAST

    return JobTemplate(
        id=id,
        name=name,
        steps=steps_final,
        needs=list(needs or []),
        matrix={k: list(v) for k, v in (matrix or {}).items()},
        runs_on=runs_on,
        env=dict(env or {}),
        correlation=correlation,
        fail_fast=fail_fast,
        max_parallel=max_parallel,
    )


# ---------------------------------------------------------------------
# Builder API
# ---------------------------------------------------------------------

class JobBuilder:
    def __init__(self, id: str):
        self.id = id
        self._name = ""
        self._needs: list[str] = []
        self._steps: list[Step] = []
        self._matrix: dict[str, list[Any]] = {}
        self._env: dict[str, str] = {}
        self._runs_on: str | None = None
        self._correlate: Optional[bool] = None
        self._fail_fast = False
        self._max_parallel: int | None = None

    def named(self, name: str):
        self._name = name
        return self

    def depends_on(self, *job_ids: str):
        self._needs.extend(job_ids)
        return self

    def define_step(self, name: str, run: str, cwd: str | None = None):
        self._steps.append(Step(name=name, run=run, cwd=cwd))
        return self

    def use_action(self, name: str, action: str, **inputs: Any):
        self._steps.append(uses(name, action, **inputs))
        return self

    def with_axis(self, axis: str, *values: Any):
        self._matrix[axis] = list(values)
        return self

    def with_env(self, **env):
        self._env.update({k: str(v) for k, v in env.items()})
        return self

    def on_runner(self, label: str):
        self._runs_on = label
        return self

    def strategy(self, *, correlate: Optional[bool] = None, fail_fast: bool = False, max_parallel: int | None = None):
        self._correlate = correlate
        self._fail_fast = fail_fast
        self._max_parallel = max_parallel
        return self

    def build(self) -> JobTemplate:
        if not self._steps:
            raise ValueError(f"Job '{self.id}' has no steps")
        return job(
            self.id,
            steps_list=list(self._steps),
            name=self._name,
            needs=self._needs,
            matrix=self._matrix,
            runs_on=self._runs_on,
            env=self._env,
            correlate=self._correlate,
            fail_fast=self._fail_fast,
            max_parallel=self._max_parallel,
        )


def build(id: str) -> JobBuilder:
    """Convenience: build('test').define_step(...).build()"""
    return JobBuilder(id)


# ---------------------------------------------------------------------
# Triggers and pipeline
# ---------------------------------------------------------------------

def on_push(*branches: str, ignore: Sequence[str] = ()) -> TriggerConfig:
    """Push trigger; no branches means every branch."""
    return TriggerConfig(push=True, push_branches=list(branches), push_branches_ignore=list(ignore))


def on_pull_request(types: Sequence[str] = DEFAULT_PR_TYPES, branches: Sequence[str] = ()) -> TriggerConfig:
    return TriggerConfig(pull_request=True, pull_request_types=list(types), pull_request_branches=list(branches))


def _merge(triggers: Sequence[TriggerConfig]) -> TriggerConfig:
    out = TriggerConfig()
    for t in triggers:
        if t.push:
            out.push = True
            out.push_branches = list(t.push_branches)
            out.push_branches_ignore = list(t.push_branches_ignore)
        if t.pull_request:
            out.pull_request = True
            out.pull_request_types = list(t.pull_request_types)
            out.pull_request_branches = list(t.pull_request_branches)
    return out


def pipeline(name: str, *jobs: JobTemplate, on: Sequence[TriggerConfig] = ()) -> Pipeline:
    """
    Workflow definition helper.

        def workflow():
            return pipeline(
                "ci",
                job("lint", sh("Ruff", "ruff check .")),
                job("test", sh("Pytest", "pytest -q"), needs=["lint"]),
                on=[on_push("main"), on_pull_request()],
            )

    Without `on`, the pipeline runs for every push and pull request.
    """
    if not on:
        return Pipeline(name=name, jobs=list(jobs))
    return Pipeline(name=name, jobs=list(jobs), triggers=_merge(on))


def wf(*jobs: JobTemplate) -> List[JobTemplate]:
    """Plain list of jobs: `JOBS = wf(job(...), job(...))`."""
    return list(jobs)
