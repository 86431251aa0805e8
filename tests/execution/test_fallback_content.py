"""Unit tests for execution/fallback_content.py."""

import pytest

from execution import data_capture
from execution.fallback_content import (
    fallback_items,
    fallback_message,
    fallback_next_actions,
    infer_audience,
    infer_deliverable_type,
    item_list_message,
    refine_item_fallback,
    stage_label,
    step_prompt,
)
from execution.stage_table import Stage, StepId, step_definition


class TestInference:
    def test_audience_from_challenge(self, foundation_record):
        assert infer_audience(foundation_record) == "local families"

    def test_default_audience(self):
        assert infer_audience({}) == "the audience"

    def test_deliverable_type(self, foundation_record):
        assert infer_deliverable_type(foundation_record) == "exhibition"

    def test_default_deliverable(self):
        assert infer_deliverable_type({}) == "project artifact"


class TestFallbackItems:
    def test_phases_are_personalized(self, foundation_record):
        items = fallback_items("plan.phases", foundation_record)
        assert len(items) == 4
        assert items[0]["name"] == "Investigate the Context"
        assert items[0]["details"][0] == "Research the background of how communities adapt to change"
        assert items[3]["details"][0] == "Present the exhibition to local families"

    def test_milestones_follow_phases(self, plan_record):
        items = fallback_items("outputs.milestones", plan_record)
        assert [i["name"] for i in items] == [
            "Investigate the Context checkpoint complete",
            "Prototype & Test checkpoint complete",
            "Launch & Reflect checkpoint complete",
        ]

    def test_milestones_padded_to_three(self):
        items = fallback_items("outputs.milestones", {})
        assert len(items) == 3
        assert items[0]["name"] == "Research insights synthesized"

    def test_milestones_capped(self):
        record = data_capture.capture({}, "plan.phases", [f"Phase {n}" for n in "ABCDEFGH"])
        assert len(fallback_items("outputs.milestones", record)) == 6

    def test_artifacts_by_deliverable(self, foundation_record):
        names = [i["name"] for i in fallback_items("outputs.artifacts", foundation_record)]
        assert names[0] == "Exhibition ready for local families"

    def test_generic_artifacts(self):
        names = [i["name"] for i in fallback_items("outputs.artifacts", {})]
        assert names[0] == "Project artifact ready for the audience"

    def test_criteria(self, foundation_record):
        names = [i["name"] for i in fallback_items("outputs.criteria", foundation_record)]
        assert len(names) == 4
        assert "Impact on local families is clear" in names

    def test_scalar_step_has_no_items(self):
        with pytest.raises(ValueError):
            fallback_items("foundation.big_idea", {})


class TestRefineItemFallback:
    def test_rename_instruction(self):
        item = {"name": "Prototype", "details": ["Build"], "extensions": {}}
        revised = refine_item_fallback(item, "rename to Build & Test")
        assert revised["name"] == "Build & Test"
        assert revised["details"] == ["Build"]
        assert revised["extensions"]["refinement"] == "rename to Build & Test"

    def test_call_it(self):
        revised = refine_item_fallback({"name": "A", "details": [], "extensions": {}}, 'call it "Field Work".')
        assert revised["name"] == "Field Work"

    def test_other_instruction_becomes_detail(self):
        item = {"name": "Prototype", "details": [], "extensions": {}}
        revised = refine_item_fallback(item, "add user testing")
        assert revised["name"] == "Prototype"
        assert revised["details"] == ["add user testing"]

    def test_original_not_mutated(self):
        item = {"name": "Prototype", "details": ["Build"], "extensions": {}}
        refine_item_fallback(item, "add user testing")
        assert item == {"name": "Prototype", "details": ["Build"], "extensions": {}}


class TestMessages:
    def test_step_prompt_uses_captured_answers(self, foundation_record):
        prompt = step_prompt(step_definition(StepId.ESSENTIAL_QUESTION), foundation_record)
        assert '"How communities adapt to change"' in prompt

    def test_step_prompt_without_answers(self):
        prompt = step_prompt(step_definition(StepId.ACTIVITIES), {})
        assert "your phases" in prompt
        assert "{{" not in prompt

    def test_greeting(self):
        text = fallback_message("greeting", "foundation.big_idea", {})
        assert text.startswith("Welcome!")
        assert "Big Idea" in text

    def test_stage_intro_includes_recap(self, foundation_record):
        text = fallback_message(
            "stage_intro", "plan.phases", foundation_record, {"recap_text": "Big Idea: \"x\""},
        )
        assert text.startswith('Big Idea: "x". Next up: Plan.')

    def test_clarify_leads_with_first_issue(self):
        text = fallback_message(
            "clarify", "foundation.essential_question", {},
            {"issues": [{"type": "structure", "severity": "error", "message": "Ask a question."}]},
        )
        assert text.startswith("Ask a question.")

    def test_suggest_items_lists_items(self):
        text = fallback_message(
            "suggest_items", "outputs.criteria", {},
            {"items": [{"name": "Evidence"}, {"name": "Craft"}]},
        )
        assert "1. Evidence\n2. Craft" in text

    def test_complete(self):
        text = fallback_message("complete", "outputs.impact", {}, {"recap_text": "Created 3 milestones"})
        assert text.startswith("Your blueprint is complete! Created 3 milestones.")

    def test_item_list_message(self):
        text = item_list_message("Phases:", [{"name": "A"}], "Accept?")
        assert text == "Phases:\n1. A\nAccept?"


class TestNextActions:
    def test_skippable_step_offers_skip(self):
        actions = fallback_next_actions("step_prompt", step_definition(StepId.RESOURCES))
        assert "Skip this step" in actions

    def test_required_step_has_no_skip(self):
        assert "Skip this step" not in fallback_next_actions("step_prompt", step_definition(StepId.IMPACT))

    def test_unknown_action(self):
        assert fallback_next_actions("nothing") == []

    def test_stage_label(self):
        assert stage_label(Stage.OUTPUTS) == "Outputs"
        assert stage_label(Stage.DONE) == "Done"
