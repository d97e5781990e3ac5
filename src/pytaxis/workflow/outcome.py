"""
Step job results.

A step job receives the execution context and returns one of:

    - ``dict``: success; merged into the context under the step's context_key
    - ``None``: success with no context contribution
    - ``Failed(reason)``: failure without raising (raising works too)
    - ``Skip(reason)``: the step is skipped; counts as satisfied downstream
    - ``Expand([...])``: graft only; new steps to splice into this execution

Example:
    ```python
    async def fetch(ctx):
        rows = await db.fetch(ctx["query"])
        if not rows:
            return Failed("empty")
        return {"rows": rows}

    def split(ctx):
        return Expand([(f"chunk_{i}", make_job(i)) for i in range(ctx["n"])])

    match result:
        case Expand(steps):
            ...
    ```
"""

from __future__ import annotations

from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from typing import Any

__all__ = ["Failed", "Skip", "Expand", "ExpandedStep"]


@dataclass(frozen=True)
class Failed:
    """Explicit failure result."""

    reason: Any
    message: str | None = None


@dataclass(frozen=True)
class Skip:
    """Mark the step skipped; downstream dependencies treat it as satisfied."""

    reason: str = "skipped"


@dataclass(frozen=True)
class ExpandedStep:
    """One step produced by a graft expansion."""

    name: str
    job: Callable[..., Any]
    options: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class Expand:
    """Graft expansion: steps to add after the graft node.

    Accepts ``(name, job)`` pairs, ``(name, job, options)`` triples or
    ExpandedStep instances.
    """

    steps: tuple[ExpandedStep, ...]

    def __init__(self, steps: Sequence[Any]):
        normalized: list[ExpandedStep] = []
        for item in steps:
            if isinstance(item, ExpandedStep):
                normalized.append(item)
            elif len(item) == 2:
                normalized.append(ExpandedStep(item[0], item[1]))
            else:
                normalized.append(ExpandedStep(item[0], item[1], dict(item[2])))
        object.__setattr__(self, "steps", tuple(normalized))
