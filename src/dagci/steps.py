# steps.py
# The step-runner capability: the only way the engine touches the outside world.
from __future__ import annotations

import logging
import os
import signal
import subprocess
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, Optional, Protocol

from .model import Step

logger = logging.getLogger(__name__)


TOOL_HINTS = {
    "python": "Install Python 3 or fix PATH.",
    "pytest": "Install pytest (e.g., pip install pytest).",
    "ruff": "Install ruff (e.g., pip install ruff).",
    "composer": "Install Composer or fix PATH.",
    "make": "Install make or fix PATH.",
    "git": "Install Git or fix PATH.",
}


@dataclass
class StepFailure(Exception):
    """Raised by step runners (or action handlers) to fail the current step."""
    job: str
    step: str
    cmd: str
    exit_code: int | None = None
    output: str = ""

    def __str__(self) -> str:
        code = f" (exit={self.exit_code})" if self.exit_code is not None else ""
        return f"[{self.job}] step '{self.step}' failed{code}: {self.cmd}"


@dataclass(frozen=True)
class StepResult:
    ok: bool
    reason: str | None = None
    exit_code: int | None = None
    output: str = ""

    @classmethod
    def success(cls, output: str = "") -> "StepResult":
        return cls(ok=True, output=output)

    @classmethod
    def failure(cls, reason: str, exit_code: int | None = None, output: str = "") -> "StepResult":
        return cls(ok=False, reason=reason, exit_code=exit_code, output=output)


@dataclass
class StepContext:
    """What a step runner knows about the job instance it is serving."""
    job_id: str
    job_name: str
    matrix: Dict[str, object] = field(default_factory=dict)
    env: Dict[str, str] = field(default_factory=dict)
    runs_on: str | None = None
    cancelled: threading.Event = field(default_factory=threading.Event)


class StepRunner(Protocol):
    def run_step(self, step: Step, context: StepContext) -> StepResult:
        ...


ActionHandler = Callable[[Step, StepContext], StepResult]


def _hint_for(cmd: str) -> Optional[str]:
    tool = cmd.strip().split(" ", 1)[0] if cmd.strip() else ""
    # python3, python3.12 and friends share one hint
    return TOOL_HINTS.get(tool) or TOOL_HINTS.get(tool.rstrip("0123456789."))


class ShellStepRunner:
    """
    Runs `run:` steps through the shell and `uses:` steps through registered
    action handlers.

    Handlers are looked up by the full reference first ("actions/checkout@v4")
    and then without the version ("actions/checkout").
    """

    def __init__(
        self,
        repo_root: str | Path = ".",
        *,
        actions: Optional[Dict[str, ActionHandler]] = None,
        skip_unknown_actions: bool = False,
        poll_interval: float = 0.2,
        output_tail: int = 4000,
        kill_grace: float = 5.0,
    ):
        self.repo_root = Path(repo_root).resolve()
        self.actions: Dict[str, ActionHandler] = dict(actions or {})
        self.skip_unknown_actions = skip_unknown_actions
        self.poll_interval = poll_interval
        self.output_tail = output_tail
        self.kill_grace = kill_grace

    def register(self, ref: str, handler: ActionHandler) -> None:
        self.actions[ref] = handler

    def run_step(self, step: Step, context: StepContext) -> StepResult:
        if step.uses is not None:
            return self._run_action(step, context)
        return self._run_shell(step, context)

    def _run_action(self, step: Step, context: StepContext) -> StepResult:
        ref = step.uses or ""
        handler = self.actions.get(ref) or self.actions.get(ref.split("@", 1)[0])
        if handler is not None:
            return handler(step, context)
        if self.skip_unknown_actions:
            logger.warning("[%s] no handler for action %s, treating step '%s' as passed", context.job_id, ref, step.name)
            return StepResult.success()
        return StepResult.failure(f"no handler registered for action {ref!r}")

    def _run_shell(self, step: Step, context: StepContext) -> StepResult:
        cwd = (self.repo_root / (step.cwd or ".")).resolve()
        if not cwd.exists():
            return StepResult.failure(f"working directory not found: {cwd}")

        env = os.environ.copy()
        env.update(context.env)
        env.update(step.env)

        logger.debug("[%s] $ %s (cwd=%s)", context.job_id, step.run, cwd)
        proc = subprocess.Popen(
            step.run,
            shell=True,
            cwd=str(cwd),
            env=env,
            text=True,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            start_new_session=True,
        )

        # wait in slices so a cancelled run can stop the child
        while True:
            try:
                output, _ = proc.communicate(timeout=self.poll_interval)
                break
            except subprocess.TimeoutExpired:
                if context.cancelled.is_set():
                    logger.info("[%s] cancelling step '%s'", context.job_id, step.name)
                    output = self._stop(proc)
                    return StepResult.failure("cancelled", exit_code=proc.returncode, output=output[-self.output_tail:])

        output = output or ""
        if proc.returncode != 0:
            reason = f"exit code {proc.returncode}"
            hint = _hint_for(step.run or "") if proc.returncode == 127 else None
            if hint:
                reason = f"{reason} ({hint})"
            return StepResult.failure(reason, exit_code=proc.returncode, output=output[-self.output_tail:])
        return StepResult.success(output[-self.output_tail:])

    def _stop(self, proc: subprocess.Popen) -> str:
        """
        Terminate the step's whole process group, not just the shell, so
        no child keeps the output pipe open. Escalates to SIGKILL after
        `kill_grace` seconds.
        """
        _signal_group(proc, signal.SIGTERM)
        try:
            output, _ = proc.communicate(timeout=self.kill_grace)
        except subprocess.TimeoutExpired:
            logger.warning("process group %d ignored SIGTERM, killing it", proc.pid)
            _signal_group(proc, signal.SIGKILL)
            output, _ = proc.communicate()
        return output or ""


def _signal_group(proc: subprocess.Popen, sig: int) -> None:
    try:
        os.killpg(proc.pid, sig)
    except ProcessLookupError:
        pass
