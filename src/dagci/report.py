# report.py
from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from .dag import RunGraph
from .model import JobStatus, JobTemplate, RunVerdict
from .trigger import Decision, RunDecision


@dataclass(frozen=True)
class JobReport:
    """One row of the status table. `status` is None for jobs never evaluated."""
    id: str
    name: str
    status: Optional[JobStatus]
    duration: Optional[float] = None
    reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "status": self.status.value if self.status is not None else "not_evaluated",
            "duration": self.duration,
            "reason": self.reason,
        }


@dataclass
class RunReport:
    verdict: RunVerdict
    jobs: List[JobReport] = field(default_factory=list)
    triggered: bool = True
    cancelled: bool = False
    error: Optional[str] = None
    structural: bool = False
    empty_jobs: List[str] = field(default_factory=list)

    @property
    def exit_code(self) -> int:
        return 0 if self.verdict is RunVerdict.SUCCESS else 1

    @property
    def counts(self) -> Dict[str, int]:
        c = Counter(j.status.value if j.status is not None else "not_evaluated" for j in self.jobs)
        return dict(c)

    def job(self, job_id: str) -> JobReport:
        for j in self.jobs:
            if j.id == job_id:
                return j
        raise KeyError(job_id)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "verdict": self.verdict.value,
            "triggered": self.triggered,
            "cancelled": self.cancelled,
            "error": self.error,
            "structural": self.structural,
            "counts": self.counts,
            "empty_jobs": list(self.empty_jobs),
            "jobs": [j.to_dict() for j in self.jobs],
        }


def summarize(graph: RunGraph, *, cancelled: bool = False) -> RunReport:
    """Aggregate terminal statuses into a verdict; has no side effects."""
    with graph.lock:
        rows = [
            JobReport(
                id=inst.id,
                name=inst.name,
                status=inst.status,
                duration=inst.duration,
                reason=inst.reason,
            )
            for inst in graph.instances.values()
        ]
    ok = all(r.status is JobStatus.SUCCEEDED for r in rows) and not cancelled
    return RunReport(
        verdict=RunVerdict.SUCCESS if ok else RunVerdict.FAILURE,
        jobs=rows,
        cancelled=cancelled,
        empty_jobs=list(graph.empty_templates),
    )


def structural_failure(templates: Sequence[JobTemplate], error: Exception) -> RunReport:
    """Report for a run that could not start because the graph is invalid."""
    return RunReport(
        verdict=RunVerdict.FAILURE,
        jobs=[JobReport(id=t.id, name=t.name, status=None) for t in templates],
        error=str(error),
        structural=True,
    )


def not_triggered(decision: RunDecision) -> RunReport:
    """
    Report for an event that started nothing. An ignored event is a no-op
    and succeeds; a malformed one fails.
    """
    verdict = RunVerdict.FAILURE if decision.decision is Decision.REJECTED else RunVerdict.SUCCESS
    return RunReport(verdict=verdict, triggered=False, error=decision.reason)
