"""Deterministic stage recaps.

A recap summarizes everything captured in one stage. It is built from the
captured slice alone, never from conversation history, and needs no LLM,
so it runs on every stage exit.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone

from execution.data_capture import CapturedValue
from execution.stage_table import Stage, StepId, step_definition
from execution.template_renderer import render_message, truncate

FOUNDATION_TEMPLATE = (
    'Big Idea: "{{big_idea}}" | Essential Question: "{{essential_question}}" | '
    'Challenge: "{{challenge}}"'
)
PLAN_TEMPLATE = (
    "Designed {{phase_count}} phases ({{phase_names}}) with {{activity_count}} "
    "activities and {{resource_summary}}"
)
OUTPUTS_TEMPLATE = (
    "Created {{milestone_count}} milestones, {{artifact_count}} artifacts, and a rubric "
    "with {{criteria_count}} criteria. Impact plan: {{impact}}"
)


@dataclass
class StageRecap:
    """Summary of one completed stage instance."""

    stage: str
    summary_text: str
    data_snapshot: dict = field(default_factory=dict)
    created_at: str = ""

    def to_dict(self) -> dict:
        return {
            "stage": self.stage,
            "summary_text": self.summary_text,
            "data_snapshot": self.data_snapshot,
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "StageRecap":
        return cls(
            stage=data["stage"],
            summary_text=data.get("summary_text", ""),
            data_snapshot=dict(data.get("data_snapshot") or {}),
            created_at=data.get("created_at", ""),
        )


def _entry(captured_slice: dict, step_id: StepId) -> CapturedValue | None:
    return captured_slice.get(step_definition(step_id).key)


def _text(captured_slice: dict, step_id: StepId, fallback: str = "not set") -> str:
    entry = _entry(captured_slice, step_id)
    if entry is None or entry.skipped or not entry.as_text():
        return fallback
    return truncate(entry.as_text(), 80)


def _count(captured_slice: dict, step_id: StepId) -> int:
    entry = _entry(captured_slice, step_id)
    return len(entry.items()) if entry else 0


def _foundation_summary(captured_slice: dict) -> str:
    return render_message(FOUNDATION_TEMPLATE, {
        "big_idea": _text(captured_slice, StepId.BIG_IDEA),
        "essential_question": _text(captured_slice, StepId.ESSENTIAL_QUESTION),
        "challenge": _text(captured_slice, StepId.CHALLENGE),
    })


def _plan_summary(captured_slice: dict) -> str:
    phases = _entry(captured_slice, StepId.PHASES)
    names = ", ".join(i["name"] for i in phases.items()) if phases else ""
    resources = _entry(captured_slice, StepId.RESOURCES)
    if resources is not None and resources.skipped:
        resource_summary = "resources skipped"
    else:
        count = _count(captured_slice, StepId.RESOURCES)
        resource_summary = f"{count} resource{'' if count == 1 else 's'}"
    return render_message(PLAN_TEMPLATE, {
        "phase_count": _count(captured_slice, StepId.PHASES),
        "phase_names": truncate(names, 80) or "unnamed",
        "activity_count": _count(captured_slice, StepId.ACTIVITIES),
        "resource_summary": resource_summary,
    })


def _outputs_summary(captured_slice: dict) -> str:
    return render_message(OUTPUTS_TEMPLATE, {
        "milestone_count": _count(captured_slice, StepId.MILESTONES),
        "artifact_count": _count(captured_slice, StepId.ARTIFACTS),
        "criteria_count": _count(captured_slice, StepId.CRITERIA),
        "impact": _text(captured_slice, StepId.IMPACT),
    })


_SUMMARIZERS = {
    Stage.FOUNDATION: _foundation_summary,
    Stage.PLAN: _plan_summary,
    Stage.OUTPUTS: _outputs_summary,
}


def generate(stage: Stage, captured_slice: dict) -> StageRecap:
    """Build the recap for a stage from its captured values.

    Args:
        stage: The stage being exited.
        captured_slice: The stage's entries of the captured record
            ({storage_key: CapturedValue}).

    Returns:
        A new StageRecap.

    Raises:
        ValueError: If the stage has no recap (e.g. Stage.DONE).
    """
    stage = Stage(stage)
    if stage not in _SUMMARIZERS:
        raise ValueError(f"Stage '{stage.value}' has no recap")
    return StageRecap(
        stage=stage.value,
        summary_text=_SUMMARIZERS[stage](captured_slice),
        data_snapshot={key: entry.to_dict() for key, entry in captured_slice.items()},
        created_at=datetime.now(timezone.utc).isoformat(),
    )
