"""Playbook loader - reads declarative playbook files into validated models.

Playbooks are JSON or YAML documents. Loading validates the top-level shape,
normalizes sequence entries into ``TaskRef``/``InlineTask`` and substitutes
``{Variable}`` tokens inside string arguments, with caller overrides taking
precedence over the playbook's own ``Variables``.
"""

import json
import re
from collections.abc import Mapping
from pathlib import Path
from typing import Any

import yaml
from loguru import logger
from pydantic import ValidationError

from orchestra.core.exceptions import (
    MalformedPlaybook,
    PlaybookNotFound,
    UnresolvedVariable,
)
from orchestra.planning.models import InlineTask, Playbook

PLAYBOOK_SUFFIXES = (".json", ".yaml", ".yml")

VARIABLE_TOKEN = re.compile(r"\{([A-Za-z_][A-Za-z0-9_\-]*(?:\.[A-Za-z_][A-Za-z0-9_\-]*)*)\}")

_MISSING = object()

_YAML_INT_TAG = "tag:yaml.org,2002:int"


class TaskNumberLoader(yaml.SafeLoader):
    """SafeLoader that only resolves plain decimal integers.

    YAML 1.1 reads ``0100`` as octal 64; here zero-padded scalars such as
    task numbers stay strings (``0100``), as do hex and sexagesimal forms.
    """


TaskNumberLoader.yaml_implicit_resolvers = {
    first: [(tag, regexp) for tag, regexp in resolvers if tag != _YAML_INT_TAG]
    for first, resolvers in yaml.SafeLoader.yaml_implicit_resolvers.items()
}
TaskNumberLoader.add_implicit_resolver(
    _YAML_INT_TAG,
    re.compile(r"^[-+]?(?:0|[1-9][0-9_]*)$"),
    list("-+0123456789"),
)


def load_document(path: Path) -> Any:
    """Parse a JSON or YAML file by suffix.

    Raises:
        ValueError: If the content cannot be parsed.
    """
    text = path.read_text(encoding="utf-8")
    try:
        if path.suffix.lower() == ".json":
            return json.loads(text)
        return yaml.load(text, Loader=TaskNumberLoader)
    except (json.JSONDecodeError, yaml.YAMLError) as e:
        raise ValueError(str(e)) from e


def lookup_variable(name: str, variables: Mapping[str, Any]) -> Any:
    """Look up a token name; a flat dotted key wins over nested traversal."""
    if name in variables:
        return variables[name]
    current: Any = variables
    for part in name.split("."):
        if not isinstance(current, Mapping) or part not in current:
            return _MISSING
        current = current[part]
    return current


def substitute(value: str, variables: Mapping[str, Any], playbook: str, task: str) -> str:
    """Replace every ``{Name}`` token in ``value``.

    Raises:
        UnresolvedVariable: If a token has no value.
    """

    def replace(match: re.Match[str]) -> str:
        resolved = lookup_variable(match.group(1), variables)
        if resolved is _MISSING:
            raise UnresolvedVariable(playbook, match.group(1), task)
        return str(resolved)

    return VARIABLE_TOKEN.sub(replace, value)


class PlaybookLoader:
    """
    Locate and load playbook definitions.

    Example:
        >>> loader = PlaybookLoader("./orchestration/playbooks")
        >>> playbook = loader.load("ci-validate", {"Profile": "Full"})
        >>> playbook.variables["Profile"]
        'Full'
    """

    def __init__(self, playbooks_dir: str | Path) -> None:
        self.playbooks_dir = Path(playbooks_dir)

    def list_playbooks(self) -> list[str]:
        """Names of all playbooks in the playbooks directory."""
        if not self.playbooks_dir.is_dir():
            return []
        names = {
            path.stem
            for path in self.playbooks_dir.iterdir()
            if path.is_file() and path.suffix.lower() in PLAYBOOK_SUFFIXES
        }
        return sorted(names)

    def find(self, name: str) -> Path:
        """Resolve a playbook name (or direct path) to its backing file.

        Raises:
            PlaybookNotFound: If no file backs the name.
        """
        direct = Path(name)
        if direct.suffix.lower() in PLAYBOOK_SUFFIXES and direct.is_file():
            return direct

        candidates = [self.playbooks_dir / f"{name}{suffix}" for suffix in PLAYBOOK_SUFFIXES]
        for candidate in candidates:
            if candidate.is_file():
                return candidate

        raise PlaybookNotFound(name, candidates)

    def load(self, name: str, overrides: Mapping[str, Any] | None = None) -> Playbook:
        """
        Load, validate and substitute a named playbook.

        Args:
            name: Playbook name or path to a playbook file.
            overrides: Caller-supplied variables; these win over ``Variables``.

        Returns:
            Validated Playbook with substituted arguments.

        Raises:
            PlaybookNotFound: If the name has no backing file.
            MalformedPlaybook: On structural violations.
            UnresolvedVariable: If a token cannot be resolved.
        """
        path = self.find(name)
        logger.debug(f"Loading playbook '{name}' from {path}")

        try:
            raw = load_document(path)
        except ValueError as e:
            raise MalformedPlaybook(name, f"cannot parse {path.name}: {e}") from e

        playbook = self.parse(raw, default_name=path.stem, source=str(path))
        return self.apply_variables(playbook, overrides)

    def parse(self, raw: Any, default_name: str, source: str | None = None) -> Playbook:
        """Validate raw document data into a Playbook."""
        if not isinstance(raw, dict):
            raise MalformedPlaybook(default_name, "top level must be a mapping")

        # Some playbooks nest everything under a single "Playbook" key
        if set(raw) == {"Playbook"} and isinstance(raw["Playbook"], dict):
            raw = raw["Playbook"]

        data = dict(raw)
        data.setdefault("Name", default_name)
        data["Source"] = source

        try:
            return Playbook.model_validate(data)
        except ValidationError as e:
            details = "; ".join(
                f"{'.'.join(str(p) for p in err['loc']) or 'playbook'}: {err['msg']}"
                for err in e.errors()
            )
            raise MalformedPlaybook(str(data.get("Name") or default_name), details) from e

    def apply_variables(
        self,
        playbook: Playbook,
        overrides: Mapping[str, Any] | None = None,
    ) -> Playbook:
        """Return a new Playbook with merged variables and substituted arguments."""
        variables = {**playbook.variables, **(overrides or {})}

        sequence = None
        if playbook.sequence is not None:
            sequence = [
                self._substitute_entry(e, variables, playbook.name) for e in playbook.sequence
            ]

        stages = None
        if playbook.stages is not None:
            stages = [
                stage.model_copy(
                    update={
                        "tasks": [
                            self._substitute_entry(e, variables, playbook.name)
                            for e in stage.tasks
                        ]
                    }
                )
                for stage in playbook.stages
            ]

        return playbook.model_copy(
            update={"variables": variables, "sequence": sequence, "stages": stages}
        )

    def _substitute_entry(self, entry: Any, variables: Mapping[str, Any], playbook: str) -> Any:
        if not isinstance(entry, InlineTask):
            return entry

        def render(value: Any) -> Any:
            if isinstance(value, str):
                return substitute(value, variables, playbook, entry.number)
            return value

        if isinstance(entry.arguments, dict):
            arguments: list[Any] | dict[str, Any] = {
                key: render(value) for key, value in entry.arguments.items()
            }
        else:
            arguments = [render(value) for value in entry.arguments]

        return entry.model_copy(update={"arguments": arguments})
