"""Unit tests for planning models."""

from pathlib import Path

import pytest
from pydantic import ValidationError

from orchestra.planning.models import (
    InlineTask,
    Playbook,
    Task,
    TaskRef,
    normalize_task_number,
)

# =============================================================================
# TASK NUMBERS
# =============================================================================


class TestNormalizeTaskNumber:
    """Tests for normalize_task_number."""

    @pytest.mark.parametrize(
        ("value", "expected"),
        [(100, "0100"), ("100", "0100"), ("0207", "0207"), (" 7 ", "0007"), (9999, "9999")],
    )
    def test_pads_to_four_digits(self, value: object, expected: str) -> None:
        """Test numbers are zero padded."""
        assert normalize_task_number(value) == expected

    @pytest.mark.parametrize("value", ["abc", "12345", "-1", "", True, "01.5"])
    def test_rejects_invalid(self, value: object) -> None:
        """Test non-numbers and out-of-range values are rejected."""
        with pytest.raises(ValueError):
            normalize_task_number(value)


class TestTask:
    """Tests for the Task model."""

    def test_category_range(self) -> None:
        """Test the hundred-wide range a task belongs to."""
        task = Task(number="0207", name="Install-Git", path=Path("0207_Install-Git.ps1"))

        assert task.category_range == "0200-0299"
        assert task.display_name == "0207_Install-Git"

    def test_dependencies_normalized(self) -> None:
        """Test dependency numbers are normalized."""
        task = Task(number=404, name="Run-Tests", path=Path("x"), dependencies=[1, "0002"])

        assert task.number == "0404"
        assert task.dependencies == ("0001", "0002")

    def test_frozen(self) -> None:
        """Test tasks are immutable."""
        task = Task(number="0001", name="A", path=Path("a"))

        with pytest.raises(ValidationError):
            task.name = "B"


# =============================================================================
# PLAYBOOK ENTRIES
# =============================================================================


class TestInlineTask:
    """Tests for inline sequence entries."""

    def test_named_arguments_render(self) -> None:
        """Test mapping arguments render as -Key value pairs."""
        entry = InlineTask.model_validate(
            {
                "Task": 402,
                "Arguments": {"Path": "./src", "Fix": True, "Skip": False, "Extra": None},
            }
        )

        assert entry.number == "0402"
        assert entry.render_arguments() == ["-Path", "./src", "-Fix"]

    def test_positional_arguments_render(self) -> None:
        """Test list arguments render positionally."""
        entry = InlineTask.model_validate({"Number": "0402", "Parameters": ["a", 2]})

        assert entry.render_arguments() == ["a", "2"]

    def test_policy_fields(self) -> None:
        """Test ContinueOnError and Timeout are read from PascalCase keys."""
        entry = InlineTask.model_validate(
            {"Script": "0500", "ContinueOnError": True, "Timeout": 30}
        )

        assert entry.continue_on_error is True
        assert entry.timeout == 30

    def test_rejects_non_positive_timeout(self) -> None:
        """Test timeouts must be positive."""
        with pytest.raises(ValidationError):
            InlineTask.model_validate({"Task": "0500", "Timeout": 0})


class TestPlaybook:
    """Tests for the Playbook model."""

    def test_sequence_entries_become_tagged_union(self) -> None:
        """Test bare numbers and objects load as TaskRef and InlineTask."""
        playbook = Playbook.model_validate(
            {
                "Name": "ci",
                "Sequence": [100, "0200", {"Task": "0300", "Arguments": ["x"]}],
            }
        )

        assert isinstance(playbook.sequence[0], TaskRef)
        assert isinstance(playbook.sequence[1], TaskRef)
        assert isinstance(playbook.sequence[2], InlineTask)
        assert playbook.task_numbers() == ["0100", "0200", "0300"]

    def test_requires_sequence_or_stages(self) -> None:
        """Test a playbook without Sequence and Stages is rejected."""
        with pytest.raises(ValidationError, match="Sequence or Stages"):
            Playbook.model_validate({"Name": "empty", "Variables": {}})

    def test_empty_sequence_is_valid(self) -> None:
        """Test an empty sequence is allowed."""
        playbook = Playbook.model_validate({"Name": "noop", "Sequence": []})

        assert playbook.task_numbers() == []

    def test_stages_as_mapping(self) -> None:
        """Test Stages may be a mapping of name to entry or task list."""
        playbook = Playbook.model_validate(
            {
                "Name": "staged",
                "Stages": {
                    "Prepare": ["0001"],
                    "Test": {"Parallel": False, "Tasks": ["0402", "0404"]},
                },
            }
        )

        assert [s.name for s in playbook.stages] == ["Prepare", "Test"]
        assert playbook.stages[0].parallel is True
        assert playbook.stages[1].parallel is False
        assert playbook.task_numbers() == ["0001", "0402", "0404"]

    def test_version_coerced_to_string(self) -> None:
        """Test numeric versions from YAML are kept as strings."""
        playbook = Playbook.model_validate({"Name": "v", "Version": 2.1, "Sequence": []})

        assert playbook.version == "2.1"

    def test_invalid_task_number(self) -> None:
        """Test malformed task numbers fail validation."""
        with pytest.raises(ValidationError):
            Playbook.model_validate({"Name": "bad", "Sequence": ["abc"]})
