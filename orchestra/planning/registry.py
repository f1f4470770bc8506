"""Task registry - discovers numbered scripts and their declared metadata.

The registry is built once per run from a scan of the scripts root plus the
feature dependency manifest, and is read-only afterwards. Every later lookup
goes through the typed task number; file names are never re-parsed.
"""

import re
from collections.abc import Iterable, Iterator
from pathlib import Path
from typing import Any

from loguru import logger
from pydantic import ValidationError

from orchestra.core.exceptions import (
    DanglingReference,
    DuplicateTaskNumber,
    InvalidSelection,
    MalformedManifest,
    RegistryError,
    UnknownTask,
    UnregisteredTask,
)
from orchestra.planning.loader import load_document
from orchestra.planning.models import (
    Feature,
    Task,
    TaskMetadata,
    normalize_task_number,
)

SCRIPT_NAME_PATTERN = re.compile(r"^(\d{4})_([^.]+)\.[A-Za-z0-9]+$")

HEADER_PATTERN = re.compile(
    r"^\s*#\s*(Stage|Dependencies|DependsOn|Tags|RequiresAdmin|Parallel|Description)"
    r"\s*:\s*(.*?)\s*$",
    re.IGNORECASE,
)

HEADER_SCAN_LINES = 40

RANGE_PATTERN = re.compile(r"^(\d{1,4})\s*-\s*(\d{1,4})$")

_TRUE_VALUES = {"true", "yes", "1", "$true", "on"}


# =============================================================================
# REGISTRY
# =============================================================================


class TaskRegistry:
    """
    Read-only catalog of tasks keyed by task number.

    Example:
        >>> registry = build_registry("./automation-scripts", "./orchestration/dependencies.json")
        >>> registry.get("0207").name
        'Install-Git'
        >>> registry.dependencies_of("0207")
        frozenset({'0001'})
    """

    def __init__(
        self,
        tasks: Iterable[Task],
        features: Iterable[Feature] = (),
        warnings: Iterable[UnregisteredTask] = (),
    ) -> None:
        self._tasks: dict[str, Task] = {}
        for task in tasks:
            if task.number in self._tasks:
                raise DuplicateTaskNumber(task.number, [self._tasks[task.number].path, task.path])
            self._tasks[task.number] = task

        self._features: dict[str, Feature] = {f.name: f for f in features}
        self._warnings = list(warnings)
        self._dependencies = {
            number: self._compute_dependencies(task) for number, task in self._tasks.items()
        }

    def __contains__(self, number: object) -> bool:
        return number in self._tasks

    def __len__(self) -> int:
        return len(self._tasks)

    def __iter__(self) -> Iterator[Task]:
        return iter(self.tasks)

    @property
    def tasks(self) -> list[Task]:
        """All tasks ordered by number."""
        return [self._tasks[n] for n in sorted(self._tasks)]

    @property
    def features(self) -> dict[str, Feature]:
        return dict(self._features)

    @property
    def warnings(self) -> list[UnregisteredTask]:
        """Non-fatal diagnostics collected at build time."""
        return list(self._warnings)

    def get(self, number: str) -> Task | None:
        """Get a task by number, or None."""
        return self._tasks.get(number)

    def require(self, number: str, playbook: str | None = None) -> Task:
        """Get a task by number.

        Raises:
            UnknownTask: If the number is not registered.
        """
        task = self._tasks.get(number)
        if task is None:
            raise UnknownTask(number, playbook)
        return task

    def dependencies_of(self, number: str) -> frozenset[str]:
        """Explicit dependencies unioned with those inferred from owning features."""
        return self._dependencies.get(number, frozenset())

    def feature_closure(self, feature: str) -> set[str]:
        """Features reachable through ``DependsOn``, transitively."""
        seen: set[str] = set()
        stack = list(self._features[feature].depends_on) if feature in self._features else []
        while stack:
            name = stack.pop()
            if name in seen or name not in self._features:
                continue
            seen.add(name)
            stack.extend(self._features[name].depends_on)
        return seen

    def _compute_dependencies(self, task: Task) -> frozenset[str]:
        deps = set(task.dependencies)
        for feature in task.features:
            for upstream in self.feature_closure(feature):
                deps.update(self._features[upstream].scripts)
        return frozenset(deps)

    # =========================================================================
    # SELECTION
    # =========================================================================

    def select(self, selection: str) -> list[str]:
        """
        Expand an ad-hoc selection like ``0100,0200,0400-0499``.

        Ranges include only registered numbers; explicit numbers must exist.

        Raises:
            UnknownTask: If an explicit number is not registered.
            InvalidSelection: If a token is not a number or a range.
        """
        selected: list[str] = []
        for token in (t.strip() for t in selection.split(",")):
            if not token:
                continue
            match = RANGE_PATTERN.match(token)
            if match:
                start, end = sorted(int(g) for g in match.groups())
                selected.extend(n for n in sorted(self._tasks) if start <= int(n) <= end)
                continue
            try:
                number = normalize_task_number(token)
            except ValueError as e:
                raise InvalidSelection(token, selection) from e
            self.require(number)
            selected.append(number)

        # Keep first occurrence
        return list(dict.fromkeys(selected))

    def filter(self, tag: str | None = None, number_range: str | None = None) -> list[Task]:
        """Tasks matching an optional tag and an optional ``NNNN-NNNN`` range.

        Raises:
            InvalidSelection: If the range is not ``NNNN-NNNN``.
        """
        tasks = self.tasks
        if tag:
            tasks = [t for t in tasks if tag.lower() in (x.lower() for x in t.tags)]
        if number_range:
            match = RANGE_PATTERN.match(number_range.strip())
            if not match:
                raise InvalidSelection(number_range)
            start, end = sorted(int(g) for g in match.groups())
            tasks = [t for t in tasks if start <= int(t.number) <= end]
        return tasks


# =============================================================================
# DISCOVERY
# =============================================================================


def discover_scripts(root: str | Path) -> dict[str, Path]:
    """
    Scan a directory tree for ``NNNN_Verb-Noun.<ext>`` scripts.

    Raises:
        RegistryError: If the root does not exist.
        DuplicateTaskNumber: If two scripts claim the same number.
    """
    root_path = Path(root)
    if not root_path.is_dir():
        raise RegistryError(f"Scripts root {root_path} does not exist")

    found: dict[str, list[Path]] = {}
    for path in sorted(root_path.rglob("*")):
        if not path.is_file():
            continue
        match = SCRIPT_NAME_PATTERN.match(path.name)
        if match:
            found.setdefault(match.group(1), []).append(path)

    for number, paths in found.items():
        if len(paths) > 1:
            raise DuplicateTaskNumber(number, paths)

    logger.debug(f"Discovered {len(found)} scripts under {root_path}")
    return {number: paths[0] for number, paths in found.items()}


def parse_script_header(path: Path) -> dict[str, Any]:
    """Read ``# Key: value`` metadata from the leading lines of a script."""
    header: dict[str, Any] = {}
    try:
        with path.open(encoding="utf-8", errors="replace") as f:
            for index, line in enumerate(f):
                if index >= HEADER_SCAN_LINES:
                    break
                match = HEADER_PATTERN.match(line)
                if not match:
                    continue
                key, value = match.group(1).lower(), match.group(2)
                if key in ("dependencies", "dependson"):
                    header["dependencies"] = _parse_number_list(value, path)
                elif key == "tags":
                    header["tags"] = [t.strip() for t in value.split(",") if t.strip()]
                elif key == "requiresadmin":
                    header["requires_admin"] = value.lower() in _TRUE_VALUES
                elif key == "parallel":
                    header["parallel_safe"] = value.lower() in _TRUE_VALUES
                elif key == "stage":
                    header["stage"] = value
                elif key == "description":
                    header["description"] = value
    except OSError as e:
        logger.warning(f"Could not read header of {path}: {e}")
    return header


def _parse_number_list(value: str, path: Path) -> list[str]:
    numbers = []
    for token in re.split(r"[,\s]+", value):
        if not token or token.lower() in ("none", "-"):
            continue
        try:
            numbers.append(normalize_task_number(token))
        except ValueError:
            logger.warning(f"Ignoring invalid dependency '{token}' in header of {path.name}")
    return numbers


# =============================================================================
# MANIFEST
# =============================================================================


def load_manifest(path: str | Path | None) -> tuple[list[Feature], dict[str, TaskMetadata]]:
    """
    Load the feature dependency manifest.

    The document is either ``{"Features": {category: {feature: entry}}, "Tasks": {...}}``
    or has categories at the top level next to an optional ``Tasks`` section.

    Returns:
        Tuple of (features, per-task metadata).

    Raises:
        MalformedManifest: If the file cannot be parsed or validated.
    """
    if path is None:
        return [], {}
    manifest_path = Path(path)
    if not manifest_path.is_file():
        logger.warning(
            f"Dependency manifest {manifest_path} not found; "
            "feature dependency inference disabled"
        )
        return [], {}

    try:
        raw = load_document(manifest_path)
    except ValueError as e:
        raise MalformedManifest(manifest_path, str(e)) from e

    if raw is None:
        return [], {}
    if not isinstance(raw, dict):
        raise MalformedManifest(manifest_path, "top level must be a mapping")

    task_section = raw.get("Tasks") or {}
    categories = raw.get("Features") if "Features" in raw else {
        k: v for k, v in raw.items() if k != "Tasks"
    }
    if not isinstance(categories, dict) or not isinstance(task_section, dict):
        raise MalformedManifest(manifest_path, "Features and Tasks must be mappings")

    features: dict[str, Feature] = {}
    try:
        for category, entries in categories.items():
            if not isinstance(entries, dict):
                raise MalformedManifest(manifest_path, f"category '{category}' must be a mapping")
            for name, entry in entries.items():
                if name in features:
                    raise MalformedManifest(manifest_path, f"feature '{name}' declared twice")
                features[name] = Feature.model_validate(
                    {**(entry or {}), "Name": name, "Category": category}
                )

        metadata = {
            normalize_task_number(number): TaskMetadata.model_validate(entry or {})
            for number, entry in task_section.items()
        }
    except (ValidationError, ValueError) as e:
        raise MalformedManifest(manifest_path, str(e)) from e

    return list(features.values()), metadata


# =============================================================================
# BUILD
# =============================================================================


def build_registry(
    scripts_root: str | Path,
    manifest_path: str | Path | None = None,
) -> TaskRegistry:
    """
    Build the task registry from a discovery scan and the manifest.

    Args:
        scripts_root: Directory tree holding ``NNNN_*`` scripts.
        manifest_path: Feature dependency manifest (JSON or YAML).

    Returns:
        Read-only TaskRegistry.

    Raises:
        DuplicateTaskNumber: If two scripts share a number.
        DanglingReference: If the manifest or a script header references a
            task or feature that does not exist.
        MalformedManifest: If the manifest cannot be parsed.
    """
    scripts = discover_scripts(scripts_root)
    features, metadata = load_manifest(manifest_path)

    owners: dict[str, list[str]] = {}
    feature_names = {f.name for f in features}
    for feature in features:
        for number in feature.scripts:
            if number not in scripts:
                raise DanglingReference(number, f"Feature '{feature.name}'")
            owners.setdefault(number, []).append(feature.name)
        for upstream in feature.depends_on:
            if upstream not in feature_names:
                raise DanglingReference(upstream, f"Feature '{feature.name}'", kind="feature")

    for number in metadata:
        if number not in scripts:
            raise DanglingReference(number, "Manifest Tasks section")

    tasks: list[Task] = []
    warnings: list[UnregisteredTask] = []
    for number, path in sorted(scripts.items()):
        fields = parse_script_header(path)
        meta = metadata.get(number)
        if meta is not None:
            overrides = {
                "stage": meta.stage,
                "dependencies": meta.depends_on,
                "parallel_safe": meta.parallel,
                "tags": meta.tags,
                "requires_admin": meta.requires_admin,
                "description": meta.description,
            }
            fields.update({k: v for k, v in overrides.items() if v is not None})

        for dependency in fields.get("dependencies", []):
            if dependency not in scripts:
                raise DanglingReference(dependency, f"Task {number}")

        match = SCRIPT_NAME_PATTERN.match(path.name)
        name = match.group(2) if match else path.stem
        tasks.append(
            Task(
                number=number,
                name=name,
                path=path,
                features=tuple(owners.get(number, [])),
                **fields,
            )
        )

        if number not in owners:
            warning = UnregisteredTask(number, path)
            warnings.append(warning)
            logger.warning(str(warning))

    registry = TaskRegistry(tasks, features, warnings)
    logger.info(
        f"Registry built: {len(registry)} tasks, {len(features)} features, "
        f"{len(warnings)} unregistered"
    )
    return registry
