"""
Workflow definition builder.

Design Pattern: Builder Pattern
A Workflow accumulates steps through chained calls, then ``build()``
validates the whole definition (cycles, then unresolved references) and
fixes a topological execution order. Only built definitions run.

Example:
    ```python
    wf = (
        Workflow("etl", step_max_retries=2, on_failure=alert)
        .step("extract", extract)
        .parallel([("clean", clean), ("enrich", enrich)], after="extract")
        .step("load", load, after_group="parallel_extract", rollback=unload)
        .build()
    )

    execution_id = await engine.start(wf, {"date": "2024-01-01"})
    ```

Graft dependencies add an edge from the graft node only. The steps a graft
expands into are added to the running execution, never to this
definition, so one definition can back many concurrent executions.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any

from pytaxis.graph import CycleDetected, Graph, GraphSummary
from pytaxis.graph.errors import GraphError
from pytaxis.graph.render import level_graph
from pytaxis.models.job import Schedule
from pytaxis.models.retry import Backoff
from pytaxis.workflow.errors import InvalidStep, MissingDependencies, WorkflowError
from pytaxis.workflow.step import (
    DEFAULT_STEP_MAX_RETRIES,
    DEFAULT_STEP_RETRY_DELAY,
    DEFAULT_STEP_TIMEOUT,
    STEP_OPTIONS,
    DependencyRef,
    Job,
    Step,
)

if TYPE_CHECKING:
    from pytaxis.storage.base import JobStore

logger = logging.getLogger(__name__)

Hook = Callable[..., Any]


@dataclass
class GraftSpec:
    """Static description of a graft point."""

    deps: tuple[str, ...] = ()
    expanded: bool = False
    expansion: list[str] = field(default_factory=list)


class Workflow:
    """A named DAG of steps plus workflow-level policy and hooks."""

    def __init__(
        self,
        name: str,
        *,
        timeout: float | None = 1800.0,
        max_retries: int = 0,
        retry_delay: float = 5.0,
        retry_backoff: Backoff = Backoff.EXPONENTIAL,
        step_timeout: float | None = DEFAULT_STEP_TIMEOUT,
        step_max_retries: int = DEFAULT_STEP_MAX_RETRIES,
        step_retry_delay: float = DEFAULT_STEP_RETRY_DELAY,
        dead_letter: bool = False,
        dead_letter_ttl: float | None = None,
        on_success: Hook | None = None,
        on_failure: Hook | None = None,
        on_cancel: Hook | None = None,
        on_step_error: Hook | None = None,
        queue: str = "default",
        tags: Sequence[str] = (),
        metadata: Mapping[str, Any] | None = None,
    ):
        """
        Args:
            name: Unique workflow name
            timeout: Seconds the whole execution may run (None: unbounded)
            max_retries: Whole-workflow restarts after a failure
            retry_delay: Base delay between whole-workflow restarts
            retry_backoff: Growth of the restart delay
            step_timeout: Default per-attempt step timeout
            step_max_retries: Default step retries
            step_retry_delay: Default base delay between step retries
            dead_letter: Insert failed executions into the dead-letter queue
            dead_letter_ttl: Seconds a dead-letter entry for this workflow is kept
            on_success: ``hook(context)``
            on_failure: ``hook(context, error)``
            on_cancel: ``hook(context, reason)``
            on_step_error: ``hook(context, step_name, error, attempt)``
        """
        self.name = name
        self.timeout = timeout
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.retry_backoff = retry_backoff
        self.step_timeout = step_timeout
        self.step_max_retries = step_max_retries
        self.step_retry_delay = step_retry_delay
        self.dead_letter = dead_letter
        self.dead_letter_ttl = dead_letter_ttl
        self.on_success = on_success
        self.on_failure = on_failure
        self.on_cancel = on_cancel
        self.on_step_error = on_step_error
        self.queue = queue
        self.tags = tuple(tags)
        self.metadata = dict(metadata or {})

        self.steps: dict[str, Step] = {}
        self.adjacency: dict[str, list[DependencyRef]] = {}
        self.groups: dict[str, list[str]] = {}
        self.grafts: dict[str, GraftSpec] = {}
        self.nested_workflows: dict[str, str] = {}
        self.trigger: Schedule | None = None

        self.execution_order: list[str] | None = None
        self._graph: Graph | None = None

    def __repr__(self) -> str:
        state = "built" if self.is_built else "unbuilt"
        return f"Workflow(name={self.name!r}, steps={len(self.steps)}, {state})"

    @property
    def is_built(self) -> bool:
        return self.execution_order is not None

    # =========================================================================
    # Builder API
    # =========================================================================

    def step(self, name: str, job: Job | None, **options: Any) -> Workflow:
        """
        Declare a step.

        Options: after, after_any, after_group, after_graft, group, when,
        timeout, max_retries, retry_delay, retry_max_delay, retry_backoff,
        retry_jitter, retry_on, no_retry_on, on_error, rollback,
        await_approval, context_key, metadata.

        Unset timeout/max_retries/retry_delay take the workflow defaults.
        """
        unknown = set(options) - STEP_OPTIONS
        if unknown:
            raise InvalidStep(f"Unknown options for step {name!r}: {sorted(unknown)}")
        return self._add_step(Step(name=name, job=job, **self._with_defaults(options)))

    def _with_defaults(self, options: dict[str, Any]) -> dict[str, Any]:
        merged = dict(options)
        merged.setdefault("timeout", self.step_timeout)
        merged.setdefault("max_retries", self.step_max_retries)
        merged.setdefault("retry_delay", self.step_retry_delay)
        return merged

    def _add_step(self, step: Step) -> Workflow:
        if step.name in self.steps:
            raise InvalidStep(f"Step {step.name!r} is already defined in {self.name!r}")
        if step.job is None and step.workflow is None:
            raise InvalidStep(f"Step {step.name!r} needs a job or a nested workflow")

        self.steps[step.name] = step
        self.adjacency[step.name] = step.dependencies
        if step.group is not None:
            self.groups.setdefault(step.group, []).append(step.name)
        self._invalidate()
        return self

    def parallel(
        self,
        steps: Sequence[tuple[str, Job]] | Mapping[str, Job],
        after: str | Sequence[str] | None = None,
        group: str | None = None,
        **options: Any,
    ) -> Workflow:
        """Add independent steps sharing the same dependencies and group.

        The group defaults to ``parallel_<after>`` so a later step can wait
        for all of them with ``after_group``.
        """
        if group is None:
            after_names = [after] if isinstance(after, str) else list(after or [])
            group = "parallel_" + "_".join(after_names) if after_names else "parallel"
        items = steps.items() if isinstance(steps, Mapping) else steps
        for name, job in items:
            self.step(name, job, after=after, group=group, **options)
        return self

    def fan_out(
        self, source: str, targets: Sequence[tuple[str, Job]] | Mapping[str, Job], **options: Any
    ) -> Workflow:
        """One step feeding N parallel steps (grouped as ``fan_out_<source>``)."""
        options.setdefault("group", f"fan_out_{source}")
        return self.parallel(targets, after=source, **options)

    def fan_in(self, sources: Sequence[str], name: str, job: Job, **options: Any) -> Workflow:
        """N steps feeding one step."""
        return self.step(name, job, after=list(sources), **options)

    def branch(
        self, name: str, job: Job, when: Callable[[dict[str, Any]], bool], **options: Any
    ) -> Workflow:
        """A step that only runs when ``when(context)`` is true at dispatch."""
        return self.step(name, job, when=when, **options)

    def add_graft(
        self, name: str, job: Job, deps: str | Sequence[str] | None = None, **options: Any
    ) -> Workflow:
        """
        Declare a graft point.

        The graft's job returns ``Expand([...])``; the expanded steps run
        after the graft, and steps declared with ``after_graft=name`` wait
        for all of them.
        """
        if deps is not None:
            options["after"] = deps
        unknown = set(options) - STEP_OPTIONS
        if unknown:
            raise InvalidStep(f"Unknown options for graft {name!r}: {sorted(unknown)}")
        step = Step(name=name, job=job, is_graft=True, **self._with_defaults(options))
        self._add_step(step)
        self.grafts[name] = GraftSpec(deps=step.after)
        return self

    def add_workflow(self, name: str, workflow_name: str, **options: Any) -> Workflow:
        """Run the registered workflow ``workflow_name`` as a child execution."""
        unknown = set(options) - STEP_OPTIONS
        if unknown:
            raise InvalidStep(f"Unknown options for nested step {name!r}: {sorted(unknown)}")
        # children retry their own steps
        options.setdefault("max_retries", 0)
        options = self._with_defaults(options)
        self._add_step(Step(name=name, job=None, workflow=workflow_name, **options))
        self.nested_workflows[name] = workflow_name
        return self

    def schedule(
        self,
        *,
        cron: str | Sequence[str] | None = None,
        every: float | timedelta | None = None,
        at: datetime | None = None,
        in_: float | timedelta | None = None,
        on_event: str | None = None,
    ) -> Workflow:
        """Attach a trigger; the scheduler starts the workflow when it fires."""
        self.trigger = Schedule(
            cron=tuple(cron) if isinstance(cron, list | tuple) else cron,
            every=every,
            at=at,
            in_=in_,
            on_event=on_event,
        )
        return self

    def on_event(self, event: str) -> Workflow:
        return self.schedule(on_event=event)

    # =========================================================================
    # Build
    # =========================================================================

    def _invalidate(self) -> None:
        self.execution_order = None
        self._graph = None

    def _assemble_graph(self) -> Graph:
        """Steps as nodes; group dependencies expanded to their members."""
        graph = Graph().add_nodes({name: step for name, step in self.steps.items()})
        edges: list[tuple[str, str]] = []
        for name, refs in self.adjacency.items():
            for ref in refs:
                if ref.kind == "group":
                    edges += [(member, name) for member in self.groups.get(ref.name, [])]
                elif ref.name in self.steps:
                    edges.append((ref.name, name))
        return graph.add_edges(edges)

    def _missing_references(self) -> dict[str, list[str]]:
        missing: dict[str, list[str]] = {}
        for name, refs in self.adjacency.items():
            for ref in refs:
                resolved = (
                    ref.name in self.steps
                    if ref.kind == "step"
                    else ref.name in self.groups
                    if ref.kind == "group"
                    else ref.name in self.grafts
                )
                if not resolved:
                    missing.setdefault(name, []).append(str(ref))
            for any_name in self.steps[name].after_any:
                if any_name not in self.steps:
                    missing.setdefault(name, []).append(any_name)
        return missing

    def build(self) -> Workflow:
        """
        Validate the definition and fix its execution order.

        Order of checks: cycles, then unresolved references.

        Raises:
            CycleDetected: The dependencies form a cycle
            MissingDependencies: A step references an unknown step, group or graft
        """
        graph = self._assemble_graph()

        cycle = graph.detect_cycle()
        if cycle is not None:
            raise CycleDetected(cycle)

        missing = self._missing_references()
        if missing:
            raise MissingDependencies(missing)

        self.execution_order = graph.topological_sort()
        self._graph = graph
        logger.debug(f"Built workflow {self.name!r}: order={self.execution_order}")
        return self

    def check(self) -> WorkflowError | GraphError | None:
        """Non-raising build: the error ``build`` would raise, or None."""
        try:
            self.build()
        except (WorkflowError, GraphError) as e:
            return e
        return None

    async def register(self, store: JobStore) -> Workflow:
        """Build, then hand the definition to ``store`` for discovery by name."""
        self.build()
        await store.register_workflow(self)
        return self

    # =========================================================================
    # Introspection
    # =========================================================================

    @property
    def graph(self) -> Graph:
        if self._graph is None:
            self.build()
        assert self._graph is not None
        return self._graph

    def dependents_of(self, name: str) -> list[str]:
        return self.graph.successors(name)

    def summary(self) -> GraphSummary:
        return self.graph.summary()

    def level_graph(self) -> str:
        return level_graph(self.graph)

    def to_mermaid(self, **options: Any) -> str:
        options.setdefault("title", self.name)
        options.setdefault("node_label", lambda node, step: _step_label(step))
        return self.graph.to_mermaid(**options)

    def to_dot(self, **options: Any) -> str:
        options.setdefault("name", self.name)
        options.setdefault("node_label", lambda node, step: _step_label(step))
        return self.graph.to_dot(**options)


def _step_label(step: Step) -> str:
    if step.is_graft:
        return f"{step.name} (graft)"
    if step.workflow is not None:
        return f"{step.name} -> {step.workflow}"
    return step.name
