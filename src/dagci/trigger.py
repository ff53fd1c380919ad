# trigger.py
# Decides whether a source-control event starts a pipeline run.
from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from functools import lru_cache
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)

PUSH = "push"
PULL_REQUEST = "pull_request"

DEFAULT_PR_TYPES = ("opened", "synchronize", "reopened")

BRANCH_PREFIX = "refs/heads/"
TAG_PREFIX = "refs/tags/"


@dataclass(frozen=True)
class Event:
    kind: str | None
    branch: str | None = None
    action: str | None = None
    base_branch: str | None = None
    tag: str | None = None


@dataclass
class TriggerConfig:
    """
    Start conditions of a pipeline (the `on:` block of a workflow).

    An event kind that is not enabled never starts a run.
    """
    push: bool = False
    push_branches: List[str] = field(default_factory=list)
    push_branches_ignore: List[str] = field(default_factory=list)

    pull_request: bool = False
    pull_request_types: List[str] = field(default_factory=lambda: list(DEFAULT_PR_TYPES))
    pull_request_branches: List[str] = field(default_factory=list)


class Decision(str, Enum):
    ACCEPTED = "accepted"
    IGNORED = "ignored"    # well-formed, but no start condition matches
    REJECTED = "rejected"  # malformed event


@dataclass(frozen=True)
class RunDecision:
    decision: Decision
    reason: str

    @property
    def accepted(self) -> bool:
        return self.decision is Decision.ACCEPTED


# ---------------------------------------------------------------------
# Branch globs
# ---------------------------------------------------------------------

@lru_cache(maxsize=256)
def _compile_glob(pattern: str) -> re.Pattern:
    """
    Translate a branch filter into a regex.

    `*` stops at `/`, `**` does not, `?` is one non-`/` char and
    `[...]` is passed through as a character class.
    """
    out: List[str] = []
    i = 0
    n = len(pattern)
    while i < n:
        c = pattern[i]
        if c == "*":
            if pattern.startswith("**", i):
                out.append(".*")
                i += 2
                continue
            out.append("[^/]*")
        elif c == "?":
            out.append("[^/]")
        elif c == "[":
            end = pattern.find("]", i + 1)
            if end == -1:
                out.append(re.escape(c))
            else:
                body = pattern[i + 1:end]
                if body.startswith("!"):
                    body = "^" + body[1:]
                out.append(f"[{body}]")
                i = end + 1
                continue
        else:
            out.append(re.escape(c))
        i += 1
    return re.compile("".join(out) + r"\Z")


def branch_matches(branch: str, patterns: List[str]) -> bool:
    """
    Evaluate patterns in order; the last matching one wins, and a leading
    `!` turns a match into an exclusion.
    """
    matched = False
    for p in patterns:
        negate = p.startswith("!")
        body = p[1:] if negate else p
        if _compile_glob(body).match(branch):
            matched = not negate
    return matched


# ---------------------------------------------------------------------
# Evaluation
# ---------------------------------------------------------------------

def _strip_ref(ref: str) -> str:
    return ref[len(BRANCH_PREFIX):] if ref.startswith(BRANCH_PREFIX) else ref


def _str_or_none(value: Any) -> Optional[str]:
    return value if isinstance(value, str) and value else None


def event_from_payload(kind: str, payload: Any) -> Event:
    """
    Build an Event from a webhook payload (as delivered to CI jobs).

    Anything that does not have the expected shape leaves the matching
    field empty, so `evaluate` rejects the event instead of failing here.
    """
    if not isinstance(payload, dict):
        logger.debug("%s payload is a %s, not a mapping", kind, type(payload).__name__)
        return Event(kind=kind)
    if kind == PUSH:
        ref = _str_or_none(payload.get("ref"))
        if ref is not None and ref.startswith(TAG_PREFIX):
            return Event(kind=kind, tag=ref[len(TAG_PREFIX):])
        return Event(kind=kind, branch=_strip_ref(ref) if ref is not None else None)
    if kind == PULL_REQUEST:
        pr = payload.get("pull_request")
        base = pr.get("base") if isinstance(pr, dict) else None
        base_ref = _str_or_none(base.get("ref")) if isinstance(base, dict) else None
        return Event(kind=kind, action=_str_or_none(payload.get("action")), base_branch=base_ref)
    return Event(kind=kind)


def evaluate(event: Optional[Event], triggers: TriggerConfig) -> RunDecision:
    """Pure: never raises, malformed input yields REJECTED."""
    if event is None or not event.kind:
        return RunDecision(Decision.REJECTED, "event has no kind")

    if event.kind == PUSH:
        if event.tag and not event.branch:
            if not triggers.push:
                return RunDecision(Decision.IGNORED, "pipeline is not triggered by push")
            # branch filters select branches only; they never match a tag
            if triggers.push_branches or triggers.push_branches_ignore:
                return RunDecision(Decision.IGNORED, f"tag {event.tag!r} is not a branch")
            return RunDecision(Decision.ACCEPTED, f"push of tag {event.tag}")
        if not event.branch:
            return RunDecision(Decision.REJECTED, "push event without a branch")
        if not triggers.push:
            return RunDecision(Decision.IGNORED, "pipeline is not triggered by push")
        if triggers.push_branches_ignore and branch_matches(event.branch, triggers.push_branches_ignore):
            return RunDecision(Decision.IGNORED, f"branch {event.branch!r} is ignored")
        if triggers.push_branches and not branch_matches(event.branch, triggers.push_branches):
            return RunDecision(
                Decision.IGNORED,
                f"branch {event.branch!r} matches none of {triggers.push_branches}",
            )
        return RunDecision(Decision.ACCEPTED, f"push to {event.branch}")

    if event.kind == PULL_REQUEST:
        if not event.action:
            return RunDecision(Decision.REJECTED, "pull_request event without an action")
        if not triggers.pull_request:
            return RunDecision(Decision.IGNORED, "pipeline is not triggered by pull_request")
        if event.action not in triggers.pull_request_types:
            return RunDecision(
                Decision.IGNORED,
                f"pull_request action {event.action!r} not in {triggers.pull_request_types}",
            )
        if triggers.pull_request_branches:
            if not event.base_branch or not branch_matches(event.base_branch, triggers.pull_request_branches):
                return RunDecision(
                    Decision.IGNORED,
                    f"base branch {event.base_branch!r} matches none of {triggers.pull_request_branches}",
                )
        return RunDecision(Decision.ACCEPTED, f"pull_request {event.action}")

    logger.debug("no trigger for event kind %r", event.kind)
    return RunDecision(Decision.IGNORED, f"pipeline is not triggered by {event.kind}")
