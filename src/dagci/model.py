# model.py
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from .trigger import TriggerConfig


@dataclass(frozen=True)
class Step:
    """
    A single step inside a CI job.

    Exactly one of `run` (a shell command) or `uses` (a reference to an
    external action, e.g. "actions/checkout@v4") is set. The engine never
    looks inside a step; it only hands it to a step runner.
    """
    name: str
    run: str | None = None
    uses: str | None = None
    with_: Dict[str, str] = field(default_factory=dict)
    cwd: str | None = None
    env: Dict[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if (self.run is None) == (self.uses is None):
            raise ValueError(f"step {self.name!r} must define exactly one of 'run' or 'uses'")

    @property
    def ref(self) -> str:
        """What the step invokes, for logs and error messages."""
        return self.run if self.run is not None else f"uses: {self.uses}"


class CorrelationPolicy(str, Enum):
    """How template-level `needs` edges are lifted onto matrix instances."""

    BROADCAST = "broadcast"    # every instance needs every upstream instance
    CORRELATED = "correlated"  # only instances agreeing on shared axes are paired


@dataclass
class JobTemplate:
    """
    A CI job before matrix expansion.

    `matrix` maps axis name -> ordered values; axis order is the order the
    axes were declared in.
    """
    id: str
    steps: List[Step]
    name: str = ""
    needs: List[str] = field(default_factory=list)
    matrix: Dict[str, List[Any]] = field(default_factory=dict)
    runs_on: str | None = None
    env: Dict[str, str] = field(default_factory=dict)

    # strategy knobs
    correlation: Optional[CorrelationPolicy] = None  # None -> run-level policy
    fail_fast: bool = False
    max_parallel: int | None = None

    def __post_init__(self) -> None:
        if not self.name:
            self.name = self.id


class IllegalTransition(RuntimeError):
    pass


class JobStatus(str, Enum):
    PENDING = "pending"
    READY = "ready"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"

    @property
    def terminal(self) -> bool:
        return self in _TERMINAL

    def can_become(self, other: "JobStatus") -> bool:
        return other in _TRANSITIONS[self]


_TERMINAL = frozenset({JobStatus.SUCCEEDED, JobStatus.FAILED, JobStatus.SKIPPED})

_TRANSITIONS: Dict[JobStatus, frozenset] = {
    JobStatus.PENDING: frozenset({JobStatus.READY, JobStatus.SKIPPED}),
    JobStatus.READY: frozenset({JobStatus.RUNNING, JobStatus.SKIPPED}),
    JobStatus.RUNNING: frozenset({JobStatus.SUCCEEDED, JobStatus.FAILED}),
    JobStatus.SUCCEEDED: frozenset(),
    JobStatus.FAILED: frozenset(),
    JobStatus.SKIPPED: frozenset(),
}


Coordinate = Tuple[Tuple[str, Any], ...]


@dataclass
class JobInstance:
    """One schedulable unit: a template pinned to one matrix coordinate."""
    id: str
    template: JobTemplate
    coordinate: Coordinate = ()
    steps: List[Step] = field(default_factory=list)
    name: str = ""
    runs_on: str | None = None
    env: Dict[str, str] = field(default_factory=dict)

    # filled in by the graph builder
    needs: List[str] = field(default_factory=list)
    blocked_by: List[str] = field(default_factory=list)

    # owned by the scheduler
    status: JobStatus = JobStatus.PENDING
    reason: str | None = None
    started_at: float | None = None
    finished_at: float | None = None

    @property
    def template_id(self) -> str:
        return self.template.id

    @property
    def axes(self) -> Dict[str, Any]:
        return dict(self.coordinate)

    @property
    def duration(self) -> float | None:
        if self.started_at is None or self.finished_at is None:
            return None
        return self.finished_at - self.started_at

    def transition(self, to: JobStatus, reason: str | None = None) -> None:
        if not self.status.can_become(to):
            raise IllegalTransition(f"{self.id}: {self.status.value} -> {to.value}")
        self.status = to
        if reason is not None:
            self.reason = reason


class RunVerdict(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"


@dataclass
class Pipeline:
    """A whole pipeline definition: start conditions plus job templates."""
    name: str
    jobs: List[JobTemplate]
    triggers: TriggerConfig = field(default_factory=lambda: TriggerConfig(push=True, pull_request=True))

    def template(self, template_id: str) -> JobTemplate:
        for t in self.jobs:
            if t.id == template_id:
                return t
        raise KeyError(template_id)
