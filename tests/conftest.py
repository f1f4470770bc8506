"""Pytest configuration and shared fixtures."""

import json
import sys
from collections.abc import Callable, Generator
from pathlib import Path
from typing import Any

import pytest
import yaml

from orchestra.core.config import Settings, clear_settings_cache
from orchestra.planning.models import Task
from orchestra.planning.registry import TaskRegistry

PYTHON_INTERPRETERS = {".py": [sys.executable]}


# =============================================================================
# WORKSPACE
# =============================================================================


@pytest.fixture
def workspace(tmp_path: Path) -> Path:
    """Create an empty orchestration workspace."""
    for directory in (
        "automation-scripts",
        "orchestration/playbooks",
        "reports",
        "logs",
    ):
        (tmp_path / directory).mkdir(parents=True, exist_ok=True)
    return tmp_path


@pytest.fixture
def scripts_root(workspace: Path) -> Path:
    return workspace / "automation-scripts"


@pytest.fixture
def playbooks_dir(workspace: Path) -> Path:
    return workspace / "orchestration" / "playbooks"


@pytest.fixture
def manifest_path(workspace: Path) -> Path:
    return workspace / "orchestration" / "dependencies.json"


def script_source(
    exit_code: int = 0,
    output: str | None = None,
    sleep: float = 0.0,
    header: dict[str, str] | None = None,
    body: str = "",
) -> str:
    """Source of a small Python task script."""
    lines = [f"# {key}: {value}" for key, value in (header or {}).items()]
    lines += [
        "import os",
        "import sys",
        "import time",
        body,
        f"print({output!r})" if output is not None else "",
        f"time.sleep({sleep})" if sleep else "",
        f"sys.exit({exit_code})",
    ]
    return "\n".join(line for line in lines if line) + "\n"


@pytest.fixture
def write_script(scripts_root: Path) -> Callable[..., Path]:
    """Write a numbered Python task script into the scripts root."""

    def factory(
        number: str,
        name: str = "Run-Task",
        subdir: str = "",
        **kwargs: Any,
    ) -> Path:
        directory = scripts_root / subdir if subdir else scripts_root
        directory.mkdir(parents=True, exist_ok=True)
        path = directory / f"{number}_{name}.py"
        kwargs.setdefault("output", f"{number} done")
        path.write_text(script_source(**kwargs), encoding="utf-8")
        return path

    return factory


@pytest.fixture
def write_manifest(manifest_path: Path) -> Callable[[dict[str, Any]], Path]:
    """Write the dependency manifest as JSON."""

    def factory(data: dict[str, Any]) -> Path:
        manifest_path.write_text(json.dumps(data, indent=2), encoding="utf-8")
        return manifest_path

    return factory


@pytest.fixture
def write_playbook(playbooks_dir: Path) -> Callable[..., Path]:
    """Write a playbook as JSON (default) or YAML."""

    def factory(name: str, data: dict[str, Any], fmt: str = "json") -> Path:
        path = playbooks_dir / f"{name}.{fmt}"
        if fmt == "json":
            path.write_text(json.dumps(data, indent=2), encoding="utf-8")
        else:
            path.write_text(yaml.safe_dump(data, sort_keys=False), encoding="utf-8")
        return path

    return factory


# =============================================================================
# SETTINGS
# =============================================================================


@pytest.fixture
def settings(workspace: Path) -> Generator[Settings, None, None]:
    """Settings pointing at the temporary workspace."""
    clear_settings_cache()

    yield Settings(
        orchestra_scripts_root=str(workspace / "automation-scripts"),
        orchestra_manifest_path=str(workspace / "orchestration" / "dependencies.json"),
        orchestra_playbooks_dir=str(workspace / "orchestration" / "playbooks"),
        orchestra_reports_dir=str(workspace / "reports"),
        orchestra_log_dir=str(workspace / "logs"),
        orchestra_log_level="DEBUG",
        orchestra_kill_grace_seconds=1.0,
        orchestra_interpreters=PYTHON_INTERPRETERS,
    )

    clear_settings_cache()


@pytest.fixture
def env_settings(
    workspace: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> Generator[Path, None, None]:
    """Point environment-loaded settings at the temporary workspace."""
    monkeypatch.setenv("ORCHESTRA_SCRIPTS_ROOT", str(workspace / "automation-scripts"))
    monkeypatch.setenv(
        "ORCHESTRA_MANIFEST_PATH", str(workspace / "orchestration" / "dependencies.json")
    )
    monkeypatch.setenv("ORCHESTRA_PLAYBOOKS_DIR", str(workspace / "orchestration" / "playbooks"))
    monkeypatch.setenv("ORCHESTRA_REPORTS_DIR", str(workspace / "reports"))
    monkeypatch.setenv("ORCHESTRA_LOG_DIR", str(workspace / "logs"))
    monkeypatch.setenv("ORCHESTRA_KILL_GRACE_SECONDS", "1")
    clear_settings_cache()

    yield workspace

    clear_settings_cache()


# =============================================================================
# IN-MEMORY REGISTRIES
# =============================================================================


@pytest.fixture
def make_registry(tmp_path: Path) -> Callable[[dict[str, dict[str, Any]]], TaskRegistry]:
    """Build a registry from ``number -> Task fields`` without touching disk."""

    def factory(specs: dict[str, dict[str, Any]], **kwargs: Any) -> TaskRegistry:
        tasks = []
        for number, fields in specs.items():
            fields = dict(fields)
            name = fields.pop("name", "Run-Task")
            tasks.append(
                Task(number=number, name=name, path=tmp_path / f"{number}_{name}.py", **fields)
            )
        return TaskRegistry(tasks, **kwargs)

    return factory


# =============================================================================
# MARKERS
# =============================================================================


def pytest_configure(config: pytest.Config) -> None:
    """Configure custom pytest markers."""
    config.addinivalue_line("markers", "unit: mark test as unit test")
    config.addinivalue_line("markers", "integration: mark test as integration test")
    config.addinivalue_line("markers", "slow: mark test as slow running")
