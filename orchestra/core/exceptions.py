"""Exception hierarchy for the orchestration engine.

Registry, playbook and resolution errors are fatal to a run: no task executes
and the process exits with code 2. Per-task failures never surface as
exceptions; they are recorded on the run result instead.
"""

from collections.abc import Iterable
from pathlib import Path

# =============================================================================
# BASE
# =============================================================================


class OrchestraError(Exception):
    """Base exception for orchestration errors."""

    pass


class RegistryError(OrchestraError):
    """Task registry could not be built."""

    pass


class PlaybookError(OrchestraError):
    """Playbook could not be loaded."""

    pass


class ResolutionError(OrchestraError):
    """Playbook could not be resolved into a plan."""

    pass


# =============================================================================
# REGISTRY
# =============================================================================


class DuplicateTaskNumber(RegistryError):
    """Two discovered scripts claim the same task number."""

    def __init__(self, number: str, paths: Iterable[Path | str]) -> None:
        self.number = number
        self.paths = [str(p) for p in paths]
        super().__init__(
            f"Task number {number} is claimed by more than one script: "
            f"{', '.join(self.paths)}"
        )


class DanglingReference(RegistryError):
    """Manifest or script metadata references something that was not discovered."""

    def __init__(self, reference: str, referenced_by: str, kind: str = "task") -> None:
        self.reference = reference
        self.referenced_by = referenced_by
        self.kind = kind
        super().__init__(
            f"{referenced_by} references {kind} {reference}, which does not exist"
        )


class MalformedManifest(RegistryError):
    """Dependency manifest is not valid structured data."""

    def __init__(self, path: Path | str, detail: str) -> None:
        self.path = str(path)
        self.detail = detail
        super().__init__(f"Malformed dependency manifest {self.path}: {detail}")


class UnregisteredTask(OrchestraError):
    """A discovered script has no manifest entry.

    Collected on the registry as a diagnostic; never raised.
    """

    def __init__(self, number: str, path: Path | str) -> None:
        self.number = number
        self.path = str(path)
        super().__init__(
            f"Task {number} ({self.path}) is not owned by any manifest feature; "
            "it is runnable but excluded from feature dependency inference"
        )


# =============================================================================
# PLAYBOOK
# =============================================================================


class PlaybookNotFound(PlaybookError):
    """No playbook file backs the requested name."""

    def __init__(self, name: str, searched: Iterable[Path | str] = ()) -> None:
        self.name = name
        self.searched = [str(p) for p in searched]
        detail = f" (searched: {', '.join(self.searched)})" if self.searched else ""
        super().__init__(f"Playbook '{name}' not found{detail}")


class MalformedPlaybook(PlaybookError):
    """Playbook violates the required structure."""

    def __init__(self, name: str, detail: str) -> None:
        self.name = name
        self.detail = detail
        super().__init__(f"Malformed playbook '{name}': {detail}")


class UnresolvedVariable(PlaybookError):
    """A {Variable} token has no value after all override layers."""

    def __init__(self, playbook: str, variable: str, task: str | None = None) -> None:
        self.playbook = playbook
        self.variable = variable
        self.task = task
        where = f" in arguments of task {task}" if task else ""
        super().__init__(
            f"Playbook '{playbook}': variable '{{{variable}}}'{where} has no value"
        )


# =============================================================================
# RESOLUTION
# =============================================================================


class UnknownTask(ResolutionError):
    """A referenced task number is not in the registry."""

    def __init__(self, number: str, playbook: str | None = None) -> None:
        self.number = number
        self.playbook = playbook
        where = f"Playbook '{playbook}' references" if playbook else "Selection references"
        super().__init__(f"{where} unknown task {number}")


class CycleDetected(ResolutionError):
    """Dependencies among the candidate tasks form a cycle."""

    def __init__(
        self,
        members: Iterable[str],
        playbook: str | None = None,
        cycle: list[str] | None = None,
    ) -> None:
        self.members = sorted(set(members))
        self.playbook = playbook
        self.cycle = cycle or []
        where = f" in playbook '{playbook}'" if playbook else ""
        path = f" ({' -> '.join(self.cycle)})" if self.cycle else ""
        super().__init__(
            f"Circular dependency detected{where}: tasks {', '.join(self.members)} "
            f"can never be scheduled{path}"
        )


class ExplicitOrderViolatesDependency(ResolutionError):
    """Explicit ordering places a task before one of its dependencies."""

    def __init__(self, task: str, dependency: str, playbook: str | None = None) -> None:
        self.task = task
        self.dependency = dependency
        self.playbook = playbook
        where = f"Playbook '{playbook}'" if playbook else "Explicit order"
        super().__init__(
            f"{where} places task {task} before its dependency {dependency}"
        )


class InvalidSelection(ResolutionError):
    """An ad-hoc selection or range token is not a task number or range."""

    def __init__(self, token: str, selection: str | None = None) -> None:
        self.token = token
        self.selection = selection
        where = f" in selection '{selection}'" if selection and selection != token else ""
        super().__init__(
            f"Invalid task selection '{token}'{where}: "
            "expected a number 0000-9999 or a range like 0400-0499"
        )
