# config.py
from __future__ import annotations

from dataclasses import dataclass

from .model import CorrelationPolicy

DEFAULT_WORKFLOW = "dagci_workflow.py"


@dataclass
class RunConfig:
    """
    Knobs for a single run. Passed explicitly to the scheduler; nothing here
    is process-wide.

    max_workers: concurrent slots; None or 0 means no cap.
    timeout: seconds before the run is cancelled; None means never.
    """
    max_workers: int | None = None
    timeout: float | None = None
    correlation: CorrelationPolicy = CorrelationPolicy.BROADCAST
    skip_unknown_actions: bool = False
    repo_root: str = "."

    def __post_init__(self) -> None:
        if self.max_workers is not None and self.max_workers < 0:
            raise ValueError(f"max_workers must be >= 0, got {self.max_workers}")
        if self.timeout is not None and self.timeout <= 0:
            raise ValueError(f"timeout must be positive, got {self.timeout}")
        if not isinstance(self.correlation, CorrelationPolicy):
            self.correlation = CorrelationPolicy(self.correlation)

    @property
    def unlimited(self) -> bool:
        return not self.max_workers

    def slot_count(self, instance_count: int) -> int:
        """Effective pool size for a graph of `instance_count` instances."""
        if self.unlimited:
            return max(1, instance_count)
        return self.max_workers
