"""Planning - from scripts on disk and playbook files to an execution plan.

This package provides the resolution pipeline:
- Task discovery and the dependency manifest (registry)
- Playbook loading and variable substitution (loader)
- Dependency ordering and stage partitioning (resolver)
"""

from orchestra.planning.dependency_resolver import SequenceResolver, resolve_playbook
from orchestra.planning.loader import PlaybookLoader
from orchestra.planning.models import (
    Feature,
    InlineTask,
    Plan,
    Playbook,
    Stage,
    StageDefinition,
    Task,
    TaskInvocation,
    TaskRef,
)
from orchestra.planning.registry import TaskRegistry, build_registry

__all__ = [
    # Models
    "Feature",
    "InlineTask",
    "Plan",
    "Playbook",
    "Stage",
    "StageDefinition",
    "Task",
    "TaskInvocation",
    "TaskRef",
    # Pipeline
    "PlaybookLoader",
    "SequenceResolver",
    "TaskRegistry",
    "build_registry",
    "resolve_playbook",
]
