"""Pipeline definition loading.

Two formats are understood:

* Python workflow files (``*_workflow.py``) that build jobs with
  :mod:`dagci.dsl` and expose ``workflow()``, ``PIPELINE`` or ``JOBS``.
* YAML documents shaped like a hosted-CI workflow (``on:``, ``jobs:``,
  ``strategy.matrix``, ``needs``, ``steps``). Pydantic models validate the
  document before it is turned into :class:`~dagci.model.JobTemplate`.
"""

from __future__ import annotations

import logging
import runpy
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from .model import CorrelationPolicy, JobTemplate, Pipeline, Step
from .trigger import DEFAULT_PR_TYPES, TriggerConfig

logger = logging.getLogger(__name__)


class DefinitionError(ValueError):
    """The pipeline definition could not be read or is invalid."""


# ── YAML schema ──────────────────────────────────────────────────────────────


def _as_list(v: Any) -> Any:
    if v is None:
        return []
    if isinstance(v, str):
        return [v]
    return v


class StepSpec(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    name: Optional[str] = None
    run: Optional[str] = None
    uses: Optional[str] = None
    with_: Dict[str, Any] = Field(default_factory=dict, alias="with")
    env: Dict[str, Any] = Field(default_factory=dict)
    working_directory: Optional[str] = Field(default=None, alias="working-directory")

    @model_validator(mode="after")
    def _run_or_uses(self) -> "StepSpec":
        if (self.run is None) == (self.uses is None):
            raise ValueError("a step needs exactly one of 'run' or 'uses'")
        return self

    def to_step(self, index: int) -> Step:
        first_line = next(iter((self.run or "").strip().splitlines()), "")
        label = self.name or self.uses or first_line
        return Step(
            name=label or f"step {index + 1}",
            run=self.run,
            uses=self.uses,
            with_={k: str(v) for k, v in self.with_.items()},
            cwd=self.working_directory,
            env={k: str(v) for k, v in self.env.items()},
        )


class StrategySpec(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    matrix: Dict[str, List[Any]] = Field(default_factory=dict)
    fail_fast: bool = Field(default=False, alias="fail-fast")
    max_parallel: Optional[int] = Field(default=None, alias="max-parallel", ge=1)
    correlate: Optional[bool] = None

    @field_validator("matrix", mode="before")
    @classmethod
    def _plain_axes(cls, v: Any) -> Any:
        if v is None:
            return {}
        if not isinstance(v, dict):
            raise ValueError("matrix must be a mapping of axis name to values")
        for axis in ("include", "exclude"):
            if axis in v:
                raise ValueError(f"matrix '{axis}' is not supported")
        for axis, values in v.items():
            if values is None:
                v[axis] = []
            elif not isinstance(values, list):
                raise ValueError(f"matrix axis '{axis}' must be a list")
            elif any(isinstance(x, (dict, list)) for x in values):
                raise ValueError(f"matrix axis '{axis}' must hold scalar values")
        return v


class JobSpec(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    name: Optional[str] = None
    needs: List[str] = Field(default_factory=list)
    runs_on: Optional[str] = Field(default=None, alias="runs-on")
    strategy: StrategySpec = Field(default_factory=StrategySpec)
    env: Dict[str, Any] = Field(default_factory=dict)
    steps: List[StepSpec] = Field(min_length=1)

    @field_validator("needs", mode="before")
    @classmethod
    def _needs_list(cls, v: Any) -> Any:
        return _as_list(v)

    def to_template(self, job_id: str) -> JobTemplate:
        correlate = self.strategy.correlate
        return JobTemplate(
            id=job_id,
            name=self.name or job_id,
            steps=[s.to_step(i) for i, s in enumerate(self.steps)],
            needs=list(self.needs),
            matrix={k: list(v) for k, v in self.strategy.matrix.items()},
            runs_on=self.runs_on,
            env={k: str(v) for k, v in self.env.items()},
            correlation=None if correlate is None else (
                CorrelationPolicy.CORRELATED if correlate else CorrelationPolicy.BROADCAST
            ),
            fail_fast=self.strategy.fail_fast,
            max_parallel=self.strategy.max_parallel,
        )


class PipelineSpec(BaseModel):
    model_config = ConfigDict(extra="ignore")

    name: Optional[str] = None
    jobs: Dict[str, JobSpec] = Field(min_length=1)


def parse_triggers(value: Any) -> TriggerConfig:
    """Parse the `on:` block: a string, a list of event names or a mapping."""
    if value is None:
        raise DefinitionError("pipeline has no 'on' block")
    if isinstance(value, str):
        value = {value: None}
    elif isinstance(value, list):
        value = {name: None for name in value}
    if not isinstance(value, dict):
        raise DefinitionError(f"'on' must be a string, list or mapping, got {type(value).__name__}")

    cfg = TriggerConfig()
    for kind, body in value.items():
        body = body or {}
        if not isinstance(body, dict):
            raise DefinitionError(f"trigger '{kind}' must be a mapping")
        if kind == "push":
            cfg.push = True
            cfg.push_branches = [str(b) for b in _as_list(body.get("branches"))]
            cfg.push_branches_ignore = [str(b) for b in _as_list(body.get("branches-ignore"))]
        elif kind == "pull_request":
            cfg.pull_request = True
            cfg.pull_request_types = [str(t) for t in _as_list(body.get("types"))] or list(DEFAULT_PR_TYPES)
            cfg.pull_request_branches = [str(b) for b in _as_list(body.get("branches"))]
        else:
            logger.info("ignoring unsupported trigger %r", kind)
    return cfg


def pipeline_from_dict(raw: Dict[str, Any], default_name: str = "pipeline") -> Pipeline:
    if not isinstance(raw, dict):
        raise DefinitionError("pipeline document must be a mapping")
    # YAML 1.1 reads a bare `on` key as boolean True
    on = raw.get("on", raw.get(True))
    triggers = parse_triggers(on)
    try:
        spec = PipelineSpec.model_validate({k: v for k, v in raw.items() if isinstance(k, str)})
    except ValidationError as e:
        raise DefinitionError(f"invalid pipeline definition:\n{e}") from e
    return Pipeline(
        name=spec.name or default_name,
        jobs=[job.to_template(job_id) for job_id, job in spec.jobs.items()],
        triggers=triggers,
    )


def load_yaml(path: Union[str, Path]) -> Pipeline:
    path = Path(path)
    try:
        with path.open() as f:
            raw = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise DefinitionError(f"could not parse {path}: {e}") from e
    pipeline = pipeline_from_dict(raw or {}, default_name=path.stem)
    logger.info("Loaded pipeline %s: %d job(s)", pipeline.name, len(pipeline.jobs))
    return pipeline


# ── Python workflow files ────────────────────────────────────────────────────


def load_python(path: Union[str, Path]) -> Pipeline:
    """
    Load a workflow from a python file path.

    The file must define one of:
      - workflow() -> Pipeline | List[JobTemplate]
      - PIPELINE = Pipeline(...)
      - JOBS = [JobTemplate, ...]
    """
    wf_path = Path(path).expanduser().resolve()
    module_name = f"dagci_workflow_{wf_path.stem}"
    globals_dict = runpy.run_path(str(wf_path), run_name=module_name)

    result: Any = None
    if "workflow" in globals_dict and callable(globals_dict["workflow"]):
        result = globals_dict["workflow"]()
    elif "PIPELINE" in globals_dict:
        result = globals_dict["PIPELINE"]
    elif "JOBS" in globals_dict:
        result = globals_dict["JOBS"]

    if isinstance(result, Pipeline):
        return result
    if isinstance(result, list) and all(isinstance(j, JobTemplate) for j in result):
        return Pipeline(name=wf_path.stem, jobs=result)
    raise DefinitionError(
        "Workflow must return/define a Pipeline or a List[JobTemplate]. "
        "Define workflow(), PIPELINE = pipeline(...) or JOBS = [job(...), ...]."
    )


def load_definition(path: Union[str, Path]) -> Pipeline:
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Workflow file not found: {path}")
    if path.suffix == ".py":
        return load_python(path)
    if path.suffix in (".yml", ".yaml"):
        return load_yaml(path)
    raise DefinitionError(f"Workflow must be a .py, .yml or .yaml file, got: {path.name}")
