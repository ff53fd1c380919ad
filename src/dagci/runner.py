# runner.py
from __future__ import annotations

import logging
import queue
import threading
import time
from collections import defaultdict, deque
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from typing import Callable, Deque, Dict, List, Optional

from .config import RunConfig
from .dag import GraphError, RunGraph, build_graph
from .model import JobInstance, JobStatus, Pipeline
from .report import RunReport, not_triggered, structural_failure, summarize
from .steps import ShellStepRunner, StepContext, StepFailure, StepResult, StepRunner
from .trigger import Event, evaluate
from .ui.console import Console, get_console

logger = logging.getLogger(__name__)


# ----------------------------------------------------------------------
# Cancellation
# ----------------------------------------------------------------------

class CancelToken:
    """Run-level cancellation signal. Safe to trigger from any thread."""

    def __init__(self) -> None:
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._listeners: List[Callable[[], None]] = []
        self.reason: str | None = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "cancelled") -> None:
        with self._lock:
            if self._event.is_set():
                return
            self.reason = reason
            self._event.set()
            listeners = list(self._listeners)
        for cb in listeners:
            cb()

    def subscribe(self, cb: Callable[[], None]) -> Callable[[], None]:
        with self._lock:
            self._listeners.append(cb)

        def unsubscribe() -> None:
            with self._lock:
                if cb in self._listeners:
                    self._listeners.remove(cb)

        return unsubscribe


# ----------------------------------------------------------------------
# Execution primitives
# ----------------------------------------------------------------------

@dataclass(frozen=True)
class JobOutcome:
    ok: bool
    reason: str | None = None


def execute_instance(
    inst: JobInstance,
    runner: StepRunner,
    context: StepContext,
    console: Console,
) -> JobOutcome:
    """
    Run the instance's steps in order. The first step that does not succeed
    aborts the rest.
    """
    for step in inst.steps:
        if context.cancelled.is_set():
            return JobOutcome(False, "cancelled")
        console.print_step(inst.id, step.name)
        try:
            result = runner.run_step(step, context)
        except StepFailure as e:
            result = StepResult.failure(str(e), exit_code=e.exit_code, output=e.output)
        except Exception as e:
            logger.debug("[%s] step '%s' raised", inst.id, step.name, exc_info=True)
            result = StepResult.failure(f"{type(e).__name__}: {e}")

        if not result.ok:
            console.print_failure(step.name, result.reason or "", exit_code=result.exit_code, output=result.output)
            return JobOutcome(False, f"step '{step.name}': {result.reason}")
    return JobOutcome(True)


# ----------------------------------------------------------------------
# Scheduler
# ----------------------------------------------------------------------

_CANCEL = object()


class Scheduler:
    """
    Walks a RunGraph and drives every instance to a terminal status.

    The thread calling run() is the only writer of instance statuses. Worker
    threads execute steps and post completions to a queue; the coordinator
    blocks on that queue and applies each completion, including the readiness
    or skip propagation it causes, under the graph lock.
    """

    def __init__(
        self,
        graph: RunGraph,
        runner: StepRunner,
        config: Optional[RunConfig] = None,
        *,
        cancel: Optional[CancelToken] = None,
        console: Optional[Console] = None,
    ):
        self.graph = graph
        self.runner = runner
        self.config = config or RunConfig()
        self.cancel = cancel or CancelToken()
        self.console = console or get_console()
        self.cancelled = False

        self._ready: Deque[str] = deque()
        self._in_flight: Dict[str, Future] = {}
        self._active: Dict[str, int] = defaultdict(int)  # running count per template
        self._events: "queue.Queue" = queue.Queue()
        self._stop = threading.Event()
        self.max_running = 0

    # ---- public ----

    def run(self) -> RunGraph:
        slots = self.config.slot_count(len(self.graph))
        deadline = time.monotonic() + self.config.timeout if self.config.timeout else None
        logger.debug("scheduling %d instances on %d slots", len(self.graph), slots)

        self._seed()
        pool = ThreadPoolExecutor(max_workers=slots, thread_name_prefix="dagci")
        unsubscribe = self.cancel.subscribe(lambda: self._events.put(_CANCEL))
        try:
            self._loop(pool, slots, deadline)
        except KeyboardInterrupt:
            self.cancel.cancel("interrupted")
            self._drain()
        finally:
            unsubscribe()
            pool.shutdown(wait=not self.cancelled, cancel_futures=True)

        stuck = self.graph.unfinished()
        if stuck:
            raise RuntimeError(f"scheduler stopped with unfinished jobs: {[i.id for i in stuck]}")
        return self.graph

    # ---- loop ----

    def _loop(self, pool: ThreadPoolExecutor, slots: int, deadline: float | None) -> None:
        while True:
            if self.cancel.cancelled:
                self._drain()
                return

            self._dispatch(pool, slots)
            if not self._in_flight:
                return

            wait_for = None
            if deadline is not None:
                wait_for = deadline - time.monotonic()
                if wait_for <= 0:
                    self.cancel.cancel(f"timed out after {self.config.timeout}s")
                    continue
            try:
                item = self._events.get(timeout=wait_for)
            except queue.Empty:
                continue
            if item is _CANCEL:
                continue
            self._settle(*item)

    def _seed(self) -> None:
        with self.graph.lock:
            for inst in self.graph:
                if inst.blocked_by and inst.status is JobStatus.PENDING:
                    self._skip(inst, f"needs {', '.join(inst.blocked_by)} which produced no instances")
                    self._skip_dependents(inst)
            for inst in self.graph:
                if inst.status is JobStatus.PENDING and not inst.needs:
                    inst.transition(JobStatus.READY)
                    self._ready.append(inst.id)

    def _dispatch(self, pool: ThreadPoolExecutor, slots: int) -> None:
        deferred: List[str] = []
        while self._ready and len(self._in_flight) < slots:
            iid = self._ready.popleft()
            inst = self.graph[iid]
            if inst.status is not JobStatus.READY:
                continue
            cap = inst.template.max_parallel
            if cap and self._active[inst.template_id] >= cap:
                deferred.append(iid)
                continue
            self._start(pool, inst)
        # capped instances keep their place at the head of the queue
        self._ready.extendleft(reversed(deferred))

    def _start(self, pool: ThreadPoolExecutor, inst: JobInstance) -> None:
        with self.graph.lock:
            inst.transition(JobStatus.RUNNING)
            inst.started_at = time.monotonic()
        self._active[inst.template_id] += 1
        self.console.print_job_start(inst.id)

        context = StepContext(
            job_id=inst.id,
            job_name=inst.name,
            matrix=inst.axes,
            env=dict(inst.env),
            runs_on=inst.runs_on,
            cancelled=self._stop,
        )
        fut = pool.submit(execute_instance, inst, self.runner, context, self.console)
        self._in_flight[inst.id] = fut
        self.max_running = max(self.max_running, len(self._in_flight))
        fut.add_done_callback(lambda f, iid=inst.id: self._events.put((iid, f)))

    def _settle(self, iid: str, fut: Future) -> None:
        if self._in_flight.pop(iid, None) is None:
            return
        inst = self.graph[iid]
        self._active[inst.template_id] -= 1
        outcome: JobOutcome = fut.result()

        with self.graph.lock:
            inst.finished_at = time.monotonic()
            if outcome.ok:
                inst.transition(JobStatus.SUCCEEDED)
                self._release(inst)
            else:
                inst.transition(JobStatus.FAILED, outcome.reason)
                self._skip_dependents(inst)
                if inst.template.fail_fast:
                    self._fail_fast(inst)

        if outcome.ok:
            self.console.print_success(inst.id, inst.duration)
        else:
            self.console.print_failure(inst.id, outcome.reason or "", is_job=True)

    # ---- propagation (caller holds graph.lock) ----

    def _release(self, inst: JobInstance) -> None:
        for did in sorted(self.graph.dependents[inst.id]):
            dep = self.graph[did]
            if dep.status is not JobStatus.PENDING:
                continue
            if all(self.graph[n].status is JobStatus.SUCCEEDED for n in dep.needs):
                dep.transition(JobStatus.READY)
                self._ready.append(did)

    def _skip(self, inst: JobInstance, reason: str) -> None:
        inst.transition(JobStatus.SKIPPED, reason)
        self.console.print_job_skipped(inst.id, reason)

    def _skip_dependents(self, source: JobInstance) -> None:
        todo = deque([source])
        while todo:
            cur = todo.popleft()
            for did in sorted(self.graph.dependents[cur.id]):
                dep = self.graph[did]
                if dep.status in (JobStatus.PENDING, JobStatus.READY):
                    self._skip(dep, f"needs {cur.id} which {cur.status.value}")
                    todo.append(dep)

    def _fail_fast(self, failed: JobInstance) -> None:
        for sib in self.graph.of_template(failed.template_id):
            if sib.status in (JobStatus.PENDING, JobStatus.READY):
                self._skip(sib, f"fail-fast after {failed.id} failed")
                self._skip_dependents(sib)

    def _drain(self) -> None:
        """Stop everything: running -> failed, waiting -> skipped."""
        reason = self.cancel.reason or "cancelled"
        self.cancelled = True
        self._stop.set()
        self.console.print_cancelled(reason)
        now = time.monotonic()
        with self.graph.lock:
            for inst in self.graph:
                if inst.status is JobStatus.RUNNING:
                    inst.transition(JobStatus.FAILED, reason)
                    inst.finished_at = now
                elif inst.status in (JobStatus.PENDING, JobStatus.READY):
                    inst.transition(JobStatus.SKIPPED, reason)
        self._in_flight.clear()
        self._ready.clear()


# ----------------------------------------------------------------------
# Public API
# ----------------------------------------------------------------------

def run_graph(
    graph: RunGraph,
    runner: StepRunner,
    config: Optional[RunConfig] = None,
    *,
    cancel: Optional[CancelToken] = None,
    console: Optional[Console] = None,
) -> RunReport:
    scheduler = Scheduler(graph, runner, config, cancel=cancel, console=console)
    scheduler.run()
    return summarize(graph, cancelled=scheduler.cancelled)


def run_pipeline(
    pipeline: Pipeline,
    event: Event,
    runner: Optional[StepRunner] = None,
    config: Optional[RunConfig] = None,
    *,
    cancel: Optional[CancelToken] = None,
    console: Optional[Console] = None,
) -> RunReport:
    """
    One complete run: trigger check, matrix expansion, graph build,
    scheduling and the final report. Always returns a report.
    """
    config = config or RunConfig()
    console = console or get_console()

    decision = evaluate(event, pipeline.triggers)
    if not decision.accepted:
        console.print_not_triggered(decision)
        return not_triggered(decision)

    try:
        graph = build_graph(pipeline.jobs, correlation=config.correlation)
    except GraphError as e:
        console.print_error("Invalid pipeline", str(e))
        return structural_failure(pipeline.jobs, e)

    if runner is None:
        runner = ShellStepRunner(config.repo_root, skip_unknown_actions=config.skip_unknown_actions)

    console.print_run_started(pipeline.name, decision.reason, len(graph))
    return run_graph(graph, runner, config, cancel=cancel, console=console)
