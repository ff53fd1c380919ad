# matrix.py
from __future__ import annotations

import itertools
import logging
import re
from dataclasses import replace
from typing import Any, Dict, List, Sequence, Tuple

from .model import Coordinate, JobInstance, JobTemplate, Step

logger = logging.getLogger(__name__)

_MATRIX_EXPR = re.compile(r"\$\{\{\s*matrix\.([A-Za-z0-9_-]+)\s*\}\}")


def instance_id(template_id: str, coordinate: Coordinate) -> str:
    if not coordinate:
        return template_id
    inner = ",".join(f"{axis}={value}" for axis, value in coordinate)
    return f"{template_id}[{inner}]"


def _substitute(text: str, axes: Dict[str, Any]) -> str:
    # unknown axes render empty, like the CI host does
    return _MATRIX_EXPR.sub(lambda m: str(axes.get(m.group(1), "")), text)


def _render_step(step: Step, axes: Dict[str, Any]) -> Step:
    if not axes:
        return step
    return replace(
        step,
        name=_substitute(step.name, axes),
        run=_substitute(step.run, axes) if step.run is not None else None,
        with_={k: _substitute(str(v), axes) for k, v in step.with_.items()},
        env={k: _substitute(str(v), axes) for k, v in step.env.items()},
    )


def coordinates(matrix: Dict[str, Sequence[Any]]) -> List[Coordinate]:
    """Cartesian product over the axes, in declaration order."""
    axes = list(matrix.items())
    if not axes:
        return [()]
    names = [name for name, _ in axes]
    return [tuple(zip(names, values)) for values in itertools.product(*(list(v) for _, v in axes))]


def expand(template: JobTemplate) -> List[JobInstance]:
    """
    Expand a template into its concrete instances.

    An axis with no values yields no instances at all; the job simply does
    not run this time.
    """
    empty = [name for name, values in template.matrix.items() if len(values) == 0]
    if empty:
        logger.info("job %s: matrix axis %s is empty, no instances", template.id, empty)
        return []

    instances: List[JobInstance] = []
    for coord in coordinates(template.matrix):
        axes = dict(coord)
        values = ", ".join(str(v) for _, v in coord)
        instances.append(
            JobInstance(
                id=instance_id(template.id, coord),
                template=template,
                coordinate=coord,
                steps=[_render_step(s, axes) for s in template.steps],
                name=f"{template.name} ({values})" if coord else template.name,
                runs_on=_substitute(template.runs_on, axes) if template.runs_on else None,
                env={k: _substitute(str(v), axes) for k, v in template.env.items()},
            )
        )
    return instances


def expand_all(templates: Sequence[JobTemplate]) -> Tuple[List[JobInstance], List[str]]:
    """Expand every template; also return ids of templates that produced nothing."""
    instances: List[JobInstance] = []
    empty: List[str] = []
    for t in templates:
        produced = expand(t)
        if not produced:
            empty.append(t.id)
        instances.extend(produced)
    return instances, empty
