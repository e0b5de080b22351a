import pytest
from pydantic import ValidationError

from growthflow.contracts import Step, StepAction, WorkflowDefinition


def test_duplicate_step_ids_rejected():
    with pytest.raises(ValidationError, match="Duplicate step id 'a'"):
        WorkflowDefinition(
            type="t",
            name="t",
            steps=[Step(id="a", action="wait"), Step(id="a", action="goto")],
        )


def test_unknown_action_is_kept():
    step = Step(id="x", action="teleport")
    assert step.action == "teleport"
    assert step.kind is None


def test_step_defaults():
    step = Step(id="g", action="goto", next_step_id="a")
    assert step.kind == StepAction.GOTO
    assert step.delay_ms == 0
    assert step.critical is False
    assert step.parallel is False
    assert step.infinite_allowed is True
    assert step.max_iterations is None


def test_random_interval_only_for_toggles_with_both_bounds():
    toggle = Step(
        id="t",
        action="toggle_continuous_action_on",
        min_interval_ms=1000,
        max_interval_ms=2000,
    )
    half = Step(id="h", action="toggle_continuous_action_on", min_interval_ms=1000)
    batch = Step(id="b", action="run_batch_action", min_interval_ms=1, max_interval_ms=2)
    assert toggle.has_random_interval
    assert not half.has_random_interval
    assert not batch.has_random_interval


def test_definition_lookup_helpers():
    definition = WorkflowDefinition(
        type="t",
        name="t",
        steps=[Step(id="a", action="wait"), Step(id="b", action="wait")],
    )
    assert definition.total_steps == 2
    assert definition.index_of("b") == 1
    assert definition.index_of("zzz") is None
    assert definition.step_at(0).id == "a"
    assert definition.step_at(2) is None
    assert definition.step_at(-1) is None
