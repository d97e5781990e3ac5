"""Tests for the Workflow builder and build-time validation."""

import pytest

from pytaxis.graph import CycleDetected
from pytaxis.models import Backoff
from pytaxis.workflow import InvalidStep, MissingDependencies, OnError, Step, Workflow


def noop(ctx):
    return None


def test_build_fixes_topological_order():
    wf = (
        Workflow("etl")
        .step("load", noop, after="transform")
        .step("extract", noop)
        .step("transform", noop, after="extract")
        .build()
    )

    assert wf.is_built
    assert wf.execution_order == ["extract", "transform", "load"]
    assert wf.dependents_of("extract") == ["transform"]


def test_build_handles_a_long_dependency_chain():
    wf = Workflow("pipeline").step("s0", noop)
    for i in range(1, 3000):
        wf.step(f"s{i}", noop, after=f"s{i - 1}")

    wf.build()

    assert wf.execution_order == [f"s{i}" for i in range(3000)]


def test_step_defaults_come_from_the_workflow():
    wf = Workflow("defaults", step_timeout=10.0, step_max_retries=1, step_retry_delay=0.5)
    wf.step("a", noop).step("b", noop, max_retries=5)

    a = wf.steps["a"]
    assert a.timeout == 10.0
    assert a.max_retries == 1
    assert a.retry_delay == 0.5
    assert a.context_key == "a"
    assert wf.steps["b"].max_retries == 5


def test_plain_step_defaults():
    step = Step(name="s", job=noop)

    assert step.timeout == 300.0
    assert step.max_retries == 3
    assert step.retry_delay == 1.0
    assert step.retry_max_delay == 60.0
    assert step.retry_backoff is Backoff.EXPONENTIAL
    assert step.on_error is OnError.FAIL


def test_string_options_are_normalized():
    step = Step(name="s", job=noop, after="a", on_error="skip", retry_backoff="linear")

    assert step.after == ("a",)
    assert step.on_error is OnError.SKIP
    assert step.retry_backoff is Backoff.LINEAR
    assert step.retry_policy.backoff is Backoff.LINEAR


def test_duplicate_step_is_rejected():
    wf = Workflow("dup").step("a", noop)

    with pytest.raises(InvalidStep):
        wf.step("a", noop)


def test_unknown_option_is_rejected():
    with pytest.raises(InvalidStep, match="retries"):
        Workflow("bad").step("a", noop, retries=3)


def test_missing_dependencies_are_reported_per_step():
    wf = (
        Workflow("missing")
        .step("a", noop)
        .step("b", noop, after=["a", "ghost"])
        .step("c", noop, after_group="nobody")
        .step("d", noop, after_any=["phantom"])
    )

    with pytest.raises(MissingDependencies) as exc_info:
        wf.build()

    assert exc_info.value.missing == {
        "b": ["ghost"],
        "c": ["group:nobody"],
        "d": ["phantom"],
    }


def test_cycles_are_reported_before_missing_references():
    wf = (
        Workflow("cyclic")
        .step("a", noop, after="b")
        .step("b", noop, after="a")
        .step("c", noop, after="ghost")
    )

    with pytest.raises(CycleDetected) as exc_info:
        wf.build()
    assert set(exc_info.value.path) == {"a", "b"}


def test_check_returns_the_error_instead_of_raising():
    assert Workflow("ok").step("a", noop).check() is None
    assert isinstance(Workflow("bad").step("a", noop, after="x").check(), MissingDependencies)


def test_adding_a_step_invalidates_the_build():
    wf = Workflow("grow").step("a", noop).build()
    wf.step("b", noop, after="a")

    assert not wf.is_built
    assert wf.build().execution_order == ["a", "b"]


def test_parallel_groups_default_to_the_dependency_name():
    wf = (
        Workflow("par")
        .step("extract", noop)
        .parallel([("clean", noop), ("enrich", noop)], after="extract")
        .step("load", noop, after_group="parallel_extract")
        .build()
    )

    assert wf.groups == {"parallel_extract": ["clean", "enrich"]}
    assert wf.execution_order[0] == "extract"
    assert wf.execution_order[-1] == "load"
    assert set(wf.graph.predecessors("load")) == {"clean", "enrich"}


def test_fan_out_and_fan_in():
    wf = (
        Workflow("fan")
        .step("source", noop)
        .fan_out("source", {"x": noop, "y": noop})
        .fan_in(["x", "y"], "sink", noop)
        .build()
    )

    assert wf.groups == {"fan_out_source": ["x", "y"]}
    assert wf.steps["sink"].after == ("x", "y")
    assert wf.summary().max_depth == 2


def test_branch_sets_a_condition():
    wf = Workflow("branchy").step("a", noop).branch("b", noop, when=lambda ctx: ctx.get("go"), after="a")

    assert wf.steps["b"].condition_satisfied({"go": True})
    assert not wf.steps["b"].condition_satisfied({})


def test_condition_that_raises_is_false():
    step = Step(name="s", job=noop, when=lambda ctx: ctx["missing"])

    assert not step.condition_satisfied({})


def test_graft_edges_come_from_the_graft_node():
    wf = (
        Workflow("grafted")
        .step("plan", noop)
        .add_graft("expand", noop, deps="plan")
        .step("merge", noop, after_graft="expand")
        .build()
    )

    assert wf.steps["expand"].is_graft
    assert wf.grafts["expand"].deps == ("plan",)
    assert wf.execution_order == ["plan", "expand", "merge"]
    assert wf.graph.has_edge("expand", "merge")


def test_after_graft_requires_a_declared_graft():
    wf = Workflow("nograft").step("plan", noop).step("merge", noop, after_graft="plan")

    with pytest.raises(MissingDependencies) as exc_info:
        wf.build()
    assert exc_info.value.missing == {"merge": ["graft:plan"]}


def test_nested_workflow_step():
    wf = Workflow("parent").step("prep", noop).add_workflow("child", "child_wf", after="prep").build()

    child = wf.steps["child"]
    assert child.is_nested
    assert child.workflow == "child_wf"
    assert child.max_retries == 0
    assert wf.nested_workflows == {"child": "child_wf"}


def test_step_needs_a_job():
    with pytest.raises(InvalidStep):
        Workflow("empty").step("a", None)


def test_schedule_attaches_a_trigger():
    wf = Workflow("nightly").schedule(cron=["0 2 * * *", "0 14 * * *"])

    assert wf.trigger.cron == ("0 2 * * *", "0 14 * * *")
    assert Workflow("evented").on_event("user.created").trigger.on_event == "user.created"


def test_renderings_use_step_labels():
    wf = Workflow("render").step("a", noop).add_graft("g", noop, deps="a").build()

    mermaid = wf.to_mermaid()
    dot = wf.to_dot()

    assert "title: render" in mermaid
    assert "g (graft)" in mermaid
    assert dot.startswith("digraph render")
    assert "Level 0: [a]" in wf.level_graph()


async def test_register_builds_and_stores(in_memory_store):
    wf = Workflow("stored").step("a", noop)

    await wf.register(in_memory_store)

    assert wf.is_built
    assert await in_memory_store.list_workflows() == ["stored"]
