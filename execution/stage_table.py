"""Static stage/step table for the guided blueprint workflow.

Stages and steps are closed enums, and the table below is the only place
their order, storage keys, and micro-flow minimums are defined. Everything
else looks steps up through the helpers here, so an unknown identifier is
rejected once, at the edge, rather than deep inside the state machine.
"""

from dataclasses import dataclass
from enum import Enum


class Stage(str, Enum):
    FOUNDATION = "foundation"
    PLAN = "plan"
    OUTPUTS = "outputs"
    DONE = "done"


class StepId(str, Enum):
    BIG_IDEA = "big_idea"
    ESSENTIAL_QUESTION = "essential_question"
    CHALLENGE = "challenge"
    PHASES = "phases"
    ACTIVITIES = "activities"
    RESOURCES = "resources"
    MILESTONES = "milestones"
    ARTIFACTS = "artifacts"
    CRITERIA = "criteria"
    IMPACT = "impact"


# Storage shapes for captured values
SHAPE_TEXT = "text"
SHAPE_ITEMS = "items"


@dataclass(frozen=True)
class StepDefinition:
    """One question/answer unit within a stage."""

    step: StepId
    stage: Stage
    label: str
    objective: str
    shape: str = SHAPE_TEXT
    compound: bool = False
    min_items: int = 0
    skippable: bool = False

    @property
    def key(self) -> str:
        """Storage key and public identifier, e.g. 'foundation.big_idea'."""
        return f"{self.stage.value}.{self.step.value}"


@dataclass(frozen=True)
class StageDefinition:
    """An ordered phase of the workflow."""

    stage: Stage
    label: str
    purpose: str
    steps: tuple[StepDefinition, ...]


STAGES: tuple[StageDefinition, ...] = (
    StageDefinition(
        stage=Stage.FOUNDATION,
        label="Foundation",
        purpose="Anchor the project in a transferable concept, a driving question, and an authentic challenge.",
        steps=(
            StepDefinition(
                StepId.BIG_IDEA, Stage.FOUNDATION, "Big Idea",
                "Define the Big Idea: a transferable concept that anchors the project.",
            ),
            StepDefinition(
                StepId.ESSENTIAL_QUESTION, Stage.FOUNDATION, "Essential Question",
                "Shape an open-ended Essential Question that invites sustained inquiry.",
            ),
            StepDefinition(
                StepId.CHALLENGE, Stage.FOUNDATION, "Challenge",
                "Define an authentic Challenge for a real audience.",
            ),
        ),
    ),
    StageDefinition(
        stage=Stage.PLAN,
        label="Plan",
        purpose="Map the learning journey: phases, the activities inside them, and supporting resources.",
        steps=(
            StepDefinition(
                StepId.PHASES, Stage.PLAN, "Journey Phases",
                "Outline the phases of the learning journey.",
                shape=SHAPE_ITEMS, compound=True, min_items=2,
            ),
            StepDefinition(
                StepId.ACTIVITIES, Stage.PLAN, "Activities",
                "List the key activities students will do across the phases.",
                shape=SHAPE_ITEMS,
            ),
            StepDefinition(
                StepId.RESOURCES, Stage.PLAN, "Resources",
                "Name helpful resources, experts, or tools (optional).",
                shape=SHAPE_ITEMS, skippable=True,
            ),
        ),
    ),
    StageDefinition(
        stage=Stage.OUTPUTS,
        label="Outputs",
        purpose="Decide what students produce, how progress is checked, and how quality is judged.",
        steps=(
            StepDefinition(
                StepId.MILESTONES, Stage.OUTPUTS, "Milestones",
                "Set progress checkpoints along the journey.",
                shape=SHAPE_ITEMS, compound=True, min_items=3,
            ),
            StepDefinition(
                StepId.ARTIFACTS, Stage.OUTPUTS, "Artifacts",
                "Name the final artifacts students will produce.",
                shape=SHAPE_ITEMS, compound=True, min_items=1,
            ),
            StepDefinition(
                StepId.CRITERIA, Stage.OUTPUTS, "Assessment Criteria",
                "List the rubric criteria that show quality work.",
                shape=SHAPE_ITEMS, compound=True, min_items=3,
            ),
            StepDefinition(
                StepId.IMPACT, Stage.OUTPUTS, "Impact Plan",
                "Describe who the work reaches and how it will be shared.",
            ),
        ),
    ),
)

TOTAL_STEPS = sum(len(s.steps) for s in STAGES)


def get_stage(stage_index: int) -> StageDefinition:
    """Return the stage definition at an index.

    Raises:
        IndexError: If the index is outside the table.
    """
    if stage_index < 0 or stage_index >= len(STAGES):
        raise IndexError(f"Stage index {stage_index} out of range")
    return STAGES[stage_index]


def get_step(stage_index: int, step_index: int) -> StepDefinition:
    """Return the step definition at a cursor position.

    Raises:
        IndexError: If the position is outside the table.
    """
    stage = get_stage(stage_index)
    if step_index < 0 or step_index >= len(stage.steps):
        raise IndexError(f"Step index {step_index} out of range for stage '{stage.stage.value}'")
    return stage.steps[step_index]


def iter_steps():
    """Yield (stage_index, step_index, StepDefinition) in workflow order."""
    for stage_index, stage in enumerate(STAGES):
        for step_index, step in enumerate(stage.steps):
            yield stage_index, step_index, step


def find_step(stage_step_id: str) -> tuple[int, int, StepDefinition]:
    """Resolve a public stageStepId ('plan.phases') or bare step id ('phases').

    Args:
        stage_step_id: Identifier as sent by the client.

    Returns:
        Tuple of (stage_index, step_index, StepDefinition).

    Raises:
        ValueError: If the identifier does not name a step in the table.
    """
    wanted = (stage_step_id or "").strip().lower()
    for stage_index, step_index, step in iter_steps():
        if wanted in (step.key, step.step.value):
            return stage_index, step_index, step
    raise ValueError(f"Unknown step '{stage_step_id}'")


def step_definition(step_id: StepId) -> StepDefinition:
    """Return the definition for a StepId."""
    return find_step(step_id.value)[2]


def ordinal(stage_index: int, step_index: int) -> int:
    """Return the 1-based position of a step across the whole workflow."""
    position = 0
    for i, stage in enumerate(STAGES):
        if i == stage_index:
            return position + step_index + 1
        position += len(stage.steps)
    return TOTAL_STEPS


def next_position(stage_index: int, step_index: int) -> tuple[int, int] | None:
    """Return the cursor after a step, or None if it was the final step."""
    stage = get_stage(stage_index)
    if step_index + 1 < len(stage.steps):
        return stage_index, step_index + 1
    if stage_index + 1 < len(STAGES):
        return stage_index + 1, 0
    return None


def is_last_step_of_stage(stage_index: int, step_index: int) -> bool:
    return step_index == len(get_stage(stage_index).steps) - 1
