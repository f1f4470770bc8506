"""Pydantic models for task discovery, playbooks and execution plans.

This module defines the data structures shared by the registry, the playbook
loader and the sequence resolver: registered tasks and manifest features,
playbook definitions with their sequence entries, and the resolved plan of
stages and task invocations handed to the execution engine.
"""

import re
from pathlib import Path
from typing import Annotated, Any, Literal

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    field_validator,
    model_validator,
)
from pydantic.alias_generators import to_pascal

TASK_NUMBER_PATTERN = re.compile(r"^\d{1,4}$")


def normalize_task_number(value: Any) -> str:
    """Normalize a task reference to its zero-padded four-digit form.

    Args:
        value: Task number as int or string ("100", "0100", 100).

    Returns:
        Zero-padded task number string.

    Raises:
        ValueError: If the value is not a number in 0000-9999.

    Example:
        >>> normalize_task_number(100)
        '0100'
    """
    if isinstance(value, bool):
        raise ValueError(f"Invalid task number: {value!r}")
    text = str(value).strip()
    if not TASK_NUMBER_PATTERN.match(text):
        raise ValueError(f"Invalid task number: {value!r} (expected 0000-9999)")
    return text.zfill(4)


def _pascal_config(**kwargs: Any) -> ConfigDict:
    return ConfigDict(alias_generator=to_pascal, populate_by_name=True, **kwargs)


# =============================================================================
# REGISTRY MODELS
# =============================================================================


class Task(BaseModel):
    """A discovered, numbered automation script.

    Built once at registry time and immutable for the rest of the run. All
    later lookups go through the typed ``number`` key.

    Example:
        >>> task = Task(number="0207", name="Install-Git", path=Path("0207_Install-Git.ps1"))
        >>> task.category_range
        '0200-0299'
    """

    model_config = ConfigDict(frozen=True)

    number: str = Field(description="Zero-padded four-digit task number")
    name: str = Field(description="Verb-Noun part of the file name")
    path: Path = Field(description="Executable path")
    stage: str = Field(default="Default", description="Declared stage name")
    dependencies: tuple[str, ...] = Field(
        default=(),
        description="Explicitly declared dependency task numbers",
    )
    parallel_safe: bool = Field(default=True, description="Safe to run concurrently")
    tags: tuple[str, ...] = Field(default=(), description="Free-form tags")
    requires_admin: bool = Field(default=False, description="Needs elevated privileges")
    features: tuple[str, ...] = Field(default=(), description="Owning manifest features")
    description: str = Field(default="", description="Human-readable description")

    @field_validator("number", mode="before")
    @classmethod
    def validate_number(cls, v: Any) -> str:
        return normalize_task_number(v)

    @field_validator("dependencies", mode="before")
    @classmethod
    def validate_dependencies(cls, v: Any) -> tuple[str, ...]:
        return tuple(normalize_task_number(d) for d in v or ())

    @property
    def category_range(self) -> str:
        """Hundred-wide range the task belongs to, e.g. ``0400-0499``."""
        start = int(self.number) // 100 * 100
        return f"{start:04d}-{start + 99:04d}"

    @property
    def display_name(self) -> str:
        return f"{self.number}_{self.name}"


class Feature(BaseModel):
    """A manifest feature owning a set of scripts."""

    model_config = _pascal_config(frozen=True)

    name: str = Field(default="", description="Feature name")
    category: str = Field(default="", description="Manifest category")
    scripts: list[str] = Field(default_factory=list, description="Owned task numbers")
    depends_on: list[str] = Field(default_factory=list, description="Feature names")
    required: bool = Field(default=False)
    description: str = Field(default="")

    @field_validator("scripts", mode="before")
    @classmethod
    def validate_scripts(cls, v: Any) -> list[str]:
        return [normalize_task_number(s) for s in v or []]

    @field_validator("depends_on", mode="before")
    @classmethod
    def validate_depends_on(cls, v: Any) -> list[str]:
        if isinstance(v, str):
            return [v]
        return list(v or [])


class TaskMetadata(BaseModel):
    """Per-task overrides from the manifest ``Tasks`` section."""

    model_config = _pascal_config(frozen=True)

    stage: str | None = None
    depends_on: list[str] | None = None
    parallel: bool | None = None
    tags: list[str] | None = None
    requires_admin: bool | None = None
    description: str | None = None

    @field_validator("depends_on", mode="before")
    @classmethod
    def validate_depends_on(cls, v: Any) -> list[str] | None:
        if v is None:
            return None
        if isinstance(v, (str, int)):
            v = [v]
        return [normalize_task_number(d) for d in v]

    @field_validator("tags", mode="before")
    @classmethod
    def validate_tags(cls, v: Any) -> list[str] | None:
        if isinstance(v, str):
            return [t.strip() for t in v.split(",") if t.strip()]
        return v


# =============================================================================
# PLAYBOOK MODELS
# =============================================================================


class TaskRef(BaseModel):
    """Sequence entry naming a task by number only."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["ref"] = "ref"
    number: str

    @field_validator("number", mode="before")
    @classmethod
    def validate_number(cls, v: Any) -> str:
        return normalize_task_number(v)

    @property
    def arguments(self) -> list[str]:
        return []

    @property
    def continue_on_error(self) -> bool | None:
        return None

    @property
    def timeout(self) -> float | None:
        return None


class InlineTask(BaseModel):
    """Sequence entry with its own arguments and policy overrides.

    Arguments are either positional (a list) or named (a mapping rendered as
    ``-Key value`` pairs; ``True`` becomes a bare switch, ``False`` and
    ``None`` are omitted).
    """

    model_config = _pascal_config(frozen=True)

    kind: Literal["inline"] = Field(default="inline", alias="kind")
    number: str = Field(validation_alias=AliasChoices("Task", "Number", "Script", "number"))
    arguments: list[Any] | dict[str, Any] = Field(
        default_factory=list,
        validation_alias=AliasChoices("Arguments", "Parameters", "Args", "arguments"),
    )
    continue_on_error: bool | None = None
    timeout: float | None = Field(default=None, gt=0)
    description: str = ""

    @field_validator("number", mode="before")
    @classmethod
    def validate_number(cls, v: Any) -> str:
        return normalize_task_number(v)

    def render_arguments(self) -> list[str]:
        """Render arguments into an argv tail."""
        if isinstance(self.arguments, dict):
            argv: list[str] = []
            for key, value in self.arguments.items():
                if value is None or value is False:
                    continue
                argv.append(f"-{key}")
                if value is not True:
                    argv.append(str(value))
            return argv
        return [str(a) for a in self.arguments]


def _coerce_entry(value: Any) -> Any:
    if isinstance(value, (TaskRef, InlineTask)):
        return value
    if isinstance(value, dict):
        return {"kind": "inline", **value}
    return {"kind": "ref", "number": value}


SequenceEntry = Annotated[TaskRef | InlineTask, Field(discriminator="kind")]


class StageDefinition(BaseModel):
    """Named, explicitly declared group of sequence entries."""

    model_config = _pascal_config(frozen=True)

    name: str = Field(min_length=1)
    parallel: bool = True
    continue_on_error: bool | None = None
    tasks: list[SequenceEntry] = Field(
        default_factory=list,
        validation_alias=AliasChoices("Tasks", "Sequence", "Scripts", "tasks"),
    )

    @field_validator("tasks", mode="before")
    @classmethod
    def validate_tasks(cls, v: Any) -> list[Any]:
        if v is None:
            return []
        if not isinstance(v, list):
            raise ValueError("stage tasks must be a list")
        return [_coerce_entry(e) for e in v]


class Playbook(BaseModel):
    """A named, reusable declaration of which tasks to run.

    Loaded fresh per invocation and never mutated; resolution produces a new
    ``Plan``.

    Example:
        >>> playbook = Playbook(name="ci", sequence=["0402", "0404"])
        >>> playbook.task_numbers()
        ['0402', '0404']
    """

    model_config = _pascal_config(frozen=True)

    name: str = Field(min_length=1, description="Playbook name")
    description: str = Field(default="")
    version: str = Field(default="1.0")
    author: str = Field(default="")
    sequence: list[SequenceEntry] | None = Field(default=None)
    stages: list[StageDefinition] | None = Field(default=None)
    variables: dict[str, Any] = Field(default_factory=dict)
    continue_on_error: bool | None = Field(
        default=None,
        description="Playbook-wide ContinueOnError default",
    )
    parallel: bool = Field(
        default=True,
        description="Parallel flag for the implicit sequence stage",
    )
    infer_order: bool = Field(
        default=False,
        description="Stage by dependency levels instead of explicit order",
    )
    source: str | None = Field(default=None, description="Backing file path")

    @field_validator("version", mode="before")
    @classmethod
    def validate_version(cls, v: Any) -> str:
        return "" if v is None else str(v)

    @field_validator("sequence", mode="before")
    @classmethod
    def validate_sequence(cls, v: Any) -> list[Any] | None:
        if v is None:
            return None
        if not isinstance(v, list):
            raise ValueError("Sequence must be a list")
        return [_coerce_entry(e) for e in v]

    @field_validator("stages", mode="before")
    @classmethod
    def validate_stages(cls, v: Any) -> list[Any] | None:
        if v is None:
            return None
        if isinstance(v, dict):
            stages = []
            for name, body in v.items():
                if isinstance(body, list):
                    body = {"Tasks": body}
                if not isinstance(body, dict):
                    raise ValueError(f"stage '{name}' must be a list or a mapping")
                stages.append({"Name": name, **body})
            return stages
        if not isinstance(v, list):
            raise ValueError("Stages must be a list or a mapping")
        return v

    @field_validator("variables", mode="before")
    @classmethod
    def validate_variables(cls, v: Any) -> dict[str, Any]:
        if v is None:
            return {}
        if not isinstance(v, dict):
            raise ValueError("Variables must be a mapping")
        return v

    @model_validator(mode="after")
    def require_sequence_or_stages(self) -> "Playbook":
        if self.sequence is None and self.stages is None:
            raise ValueError("either Sequence or Stages must be present")
        return self

    def task_numbers(self) -> list[str]:
        """All referenced task numbers in declared order (duplicates kept)."""
        numbers = [e.number for e in self.sequence or []]
        for stage in self.stages or []:
            numbers.extend(e.number for e in stage.tasks)
        return numbers


# =============================================================================
# PLAN MODELS
# =============================================================================


class TaskInvocation(BaseModel):
    """A task bound to its resolved arguments at one sequence position."""

    model_config = ConfigDict(frozen=True)

    task: Task
    position: int = Field(ge=0, description="Position in the flattened sequence")
    stage: str = Field(description="Name of the plan stage")
    arguments: list[str] = Field(default_factory=list)
    variables: dict[str, Any] = Field(default_factory=dict)
    dry_run: bool = False
    timeout: float | None = Field(default=None, gt=0)
    continue_on_error: bool | None = Field(
        default=None,
        description="None inherits the engine default",
    )
    dependencies: tuple[str, ...] = Field(
        default=(),
        description="Dependencies present in the same plan",
    )

    @property
    def number(self) -> str:
        return self.task.number

    @property
    def key(self) -> str:
        return f"{self.task.number}@{self.position}"


class Stage(BaseModel):
    """Synchronization boundary in a plan."""

    model_config = ConfigDict(frozen=True)

    name: str
    parallel_eligible: bool = False
    invocations: list[TaskInvocation] = Field(default_factory=list)

    @property
    def task_numbers(self) -> list[str]:
        return [inv.number for inv in self.invocations]


class Plan(BaseModel):
    """Resolved, concrete execution schedule derived from a playbook."""

    model_config = ConfigDict(frozen=True)

    playbook: str
    stages: list[Stage] = Field(default_factory=list)
    variables: dict[str, Any] = Field(default_factory=dict)

    @property
    def total_stages(self) -> int:
        return len(self.stages)

    @property
    def invocations(self) -> list[TaskInvocation]:
        return [inv for stage in self.stages for inv in stage.invocations]

    @property
    def task_count(self) -> int:
        return sum(len(stage.invocations) for stage in self.stages)

    def partition(self) -> list[list[str]]:
        """Stage partition as task number lists, for structural comparison."""
        return [stage.task_numbers for stage in self.stages]

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "playbook": self.playbook,
            "total_stages": self.total_stages,
            "stages": [
                {
                    "name": stage.name,
                    "parallel_eligible": stage.parallel_eligible,
                    "tasks": [
                        {
                            "number": inv.number,
                            "name": inv.task.name,
                            "position": inv.position,
                            "arguments": inv.arguments,
                            "dependencies": list(inv.dependencies),
                        }
                        for inv in stage.invocations
                    ],
                }
                for stage in self.stages
            ],
        }
