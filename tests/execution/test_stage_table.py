"""Unit tests for execution/stage_table.py."""

import pytest

from execution.stage_table import (
    STAGES,
    TOTAL_STEPS,
    Stage,
    StepId,
    find_step,
    get_stage,
    get_step,
    is_last_step_of_stage,
    iter_steps,
    next_position,
    ordinal,
    step_definition,
)


class TestTable:
    def test_three_working_stages(self):
        assert [s.stage for s in STAGES] == [Stage.FOUNDATION, Stage.PLAN, Stage.OUTPUTS]

    def test_total_steps(self):
        assert TOTAL_STEPS == 10
        assert len(list(iter_steps())) == TOTAL_STEPS

    def test_compound_minimums(self):
        assert step_definition(StepId.PHASES).min_items == 2
        assert step_definition(StepId.MILESTONES).min_items == 3
        assert step_definition(StepId.ARTIFACTS).min_items == 1
        assert step_definition(StepId.CRITERIA).min_items == 3

    def test_only_resources_is_skippable(self):
        skippable = [step.step for _, _, step in iter_steps() if step.skippable]
        assert skippable == [StepId.RESOURCES]

    def test_keys_are_stage_qualified(self):
        assert step_definition(StepId.BIG_IDEA).key == "foundation.big_idea"
        assert step_definition(StepId.IMPACT).key == "outputs.impact"


class TestLookup:
    def test_get_stage_out_of_range(self):
        with pytest.raises(IndexError):
            get_stage(3)

    def test_get_step_out_of_range(self):
        with pytest.raises(IndexError):
            get_step(0, 3)

    def test_find_by_key(self):
        assert find_step("plan.phases")[:2] == (1, 0)

    def test_find_by_bare_id(self):
        assert find_step("criteria")[:2] == (2, 2)

    def test_find_is_case_insensitive(self):
        assert find_step(" Outputs.Impact ")[:2] == (2, 3)

    def test_unknown_step(self):
        with pytest.raises(ValueError, match="Unknown step"):
            find_step("plan.budget")

    def test_none_is_unknown(self):
        with pytest.raises(ValueError):
            find_step(None)


class TestPositions:
    def test_ordinal(self):
        assert ordinal(0, 0) == 1
        assert ordinal(1, 0) == 4
        assert ordinal(2, 3) == 10

    def test_next_within_stage(self):
        assert next_position(0, 1) == (0, 2)

    def test_next_crosses_stage(self):
        assert next_position(0, 2) == (1, 0)

    def test_next_at_end(self):
        assert next_position(2, 3) is None

    def test_last_step_of_stage(self):
        assert is_last_step_of_stage(0, 2) is True
        assert is_last_step_of_stage(2, 2) is False
        assert is_last_step_of_stage(2, 3) is True
