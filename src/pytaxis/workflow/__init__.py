"""Workflow definitions and the execution engine."""

from pytaxis.workflow.definition import GraftSpec, Workflow
from pytaxis.workflow.engine import EngineConfig, WorkflowEngine
from pytaxis.workflow.errors import (
    ChildWorkflowFailed,
    ExecutionNotFound,
    InvalidStateTransition,
    InvalidStep,
    MissingDependencies,
    StepError,
    StepTimeoutError,
    WorkflowError,
    WorkflowNotFound,
    WorkflowTimeoutError,
)
from pytaxis.workflow.outcome import Expand, ExpandedStep, Failed, Skip
from pytaxis.workflow.runtime import ExecutionRuntime
from pytaxis.workflow.step import DependencyRef, OnError, Step

__all__ = [
    "ChildWorkflowFailed",
    "DependencyRef",
    "EngineConfig",
    "ExecutionNotFound",
    "ExecutionRuntime",
    "Expand",
    "ExpandedStep",
    "Failed",
    "GraftSpec",
    "InvalidStateTransition",
    "InvalidStep",
    "MissingDependencies",
    "OnError",
    "Skip",
    "Step",
    "StepError",
    "StepTimeoutError",
    "Workflow",
    "WorkflowEngine",
    "WorkflowError",
    "WorkflowNotFound",
    "WorkflowTimeoutError",
]
