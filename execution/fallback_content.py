"""Deterministic fallback messages and item suggestions.

Used whenever the LLM is disabled, unavailable, times out, or returns
something unusable. Everything here is template-driven and depends only
on captured answers, so a session can always move forward.
"""

import re

from execution.data_capture import captured_text, get_value, make_item
from execution.stage_table import STAGES, Stage, StepDefinition, StepId, find_step
from execution.template_renderer import render_message, truncate

GREETING = (
    "Welcome! We'll build your project blueprint in three stages: "
    "Foundation, Plan, and Outputs. {{step_prompt}}"
)

STEP_PROMPTS = {
    StepId.BIG_IDEA: (
        "Let's capture a clear Big Idea that students can carry with them. "
        "What core concept sums up your project?"
    ),
    StepId.ESSENTIAL_QUESTION: (
        'Think about your Big Idea: "{{big_idea}}". '
        "What open-ended question will drive inquiry toward it?"
    ),
    StepId.CHALLENGE: (
        'Your Essential Question is "{{essential_question}}". '
        "What real-world challenge will students tackle to answer it? Name who benefits."
    ),
    StepId.PHASES: (
        "Let's map the learning journey. Accept the suggested phases, refine or rename one, "
        "reorder them, or ask for different ones."
    ),
    StepId.ACTIVITIES: (
        "What key activities will students do across your phases ({{phase_names}})? "
        "List one per line."
    ),
    StepId.RESOURCES: (
        "Which resources, experts, or tools will help? List them, or skip this step."
    ),
    StepId.MILESTONES: (
        "Now the checkpoints. Here are milestones that track progress through your phases. "
        "You need at least three."
    ),
    StepId.ARTIFACTS: (
        "What will students produce for {{audience}}? Review the suggested artifacts."
    ),
    StepId.CRITERIA: (
        "How will quality be judged? Review the suggested rubric criteria. You need at least three."
    ),
    StepId.IMPACT: (
        "Last step: who will see this work, and how will students share it? "
        "Describe the audience and the method."
    ),
}

STAGE_INTRO = "{{recap_line}}Next up: {{stage_label}}. {{stage_purpose}} {{step_prompt}}"

CLARIFY = "{{issue}} {{step_prompt}}"

ITEM_LIST = "{{heading}}\n{{#items}}{{position}}. {{name}}\n{{/items}}{{footer}}"

COMPLETE = (
    "Your blueprint is complete! {{recap_line}}"
    "You can edit any step or start over whenever you like."
)

TEMPLATE_PHASES = [
    ("Investigate the Context", ["Research the background of {topic}", "Interview people affected"]),
    ("Co-Design Possibilities", ["Brainstorm solution ideas", "Select a direction for the {deliverable}"]),
    ("Prototype & Test", ["Build a first version", "Test it and collect feedback"]),
    ("Launch & Reflect", ["Present the {deliverable} to {audience}", "Reflect on the process"]),
]

DEFAULT_MILESTONES = [
    "Research insights synthesized",
    "Initial draft completed",
    "Prototype critiqued and revised",
    "Launch rehearsal complete",
]

ARTIFACTS_BY_TYPE = {
    "exhibition": ["Exhibition ready for {audience}", "Curator statement and labels", "Process portfolio documenting decisions"],
    "campaign": ["Campaign materials for {audience}", "Campaign strategy document", "Metrics and success criteria"],
    "proposal": ["Evidence-based proposal for {audience}", "Supporting research documentation", "Implementation timeline"],
    "prototype": ["Working prototype demonstrated to {audience}", "Technical documentation", "User feedback report"],
    "podcast": ["Podcast episode for {audience}", "Script and show notes", "Reflection on production process"],
    "documentary": ["Documentary screened for {audience}", "Director's statement", "Production journal"],
    "portfolio": ["Portfolio presented to {audience}", "Reflective statements", "Evidence of growth over time"],
}

DEFAULT_CRITERIA = [
    "Evidence is credible and relevant",
    "Quality meets professional standards",
    "Impact on {audience} is clear",
    "Student voice and reflection show growth",
]

DELIVERABLE_PATTERNS = [
    ("exhibition", r"exhibit"),
    ("campaign", r"campaign"),
    ("proposal", r"proposal"),
    ("prototype", r"prototype"),
    ("podcast", r"podcast"),
    ("documentary", r"documentary|film"),
    ("portfolio", r"portfolio"),
]

_RENAME_INSTRUCTION = re.compile(
    r"^(?:rename(?: it)? to|call it|change (?:it|the name) to|make it)\s+(.+)$", re.IGNORECASE
)


# ---------------------------------------------------------------------------
# Inference helpers
# ---------------------------------------------------------------------------

def infer_audience(captured: dict) -> str:
    """Pull an audience from a 'for ...' phrase in the challenge."""
    challenge = captured_text(captured, StepId.CHALLENGE.value)
    match = re.search(r"\bfor\s+([^.,;!?]+)", challenge, re.IGNORECASE)
    if match:
        words = match.group(1).split()[:6]
        if words:
            return " ".join(words)
    return "the audience"


def infer_deliverable_type(captured: dict) -> str:
    challenge = captured_text(captured, StepId.CHALLENGE.value)
    for name, pattern in DELIVERABLE_PATTERNS:
        if re.search(pattern, challenge, re.IGNORECASE):
            return name
    return "project artifact"


def _topic(captured: dict) -> str:
    for step_id in (StepId.BIG_IDEA, StepId.ESSENTIAL_QUESTION):
        text = captured_text(captured, step_id.value)
        if text:
            return truncate(text.rstrip("?"), 50).lower()
    return "this topic"


def _fill(text: str, captured: dict) -> str:
    return (
        text.replace("{topic}", _topic(captured))
        .replace("{deliverable}", infer_deliverable_type(captured))
        .replace("{audience}", infer_audience(captured))
    )


# ---------------------------------------------------------------------------
# Item generators
# ---------------------------------------------------------------------------

def _phase_items(captured: dict) -> list[dict]:
    return [
        make_item(name, [_fill(activity, captured) for activity in activities])
        for name, activities in TEMPLATE_PHASES
    ]


def _milestone_items(captured: dict) -> list[dict]:
    phases = get_value(captured, StepId.PHASES.value)
    names = [f"{item['name']} checkpoint complete" for item in (phases.items() if phases else [])]
    for default in DEFAULT_MILESTONES:
        if len(names) >= 3:
            break
        names.append(default)
    return [make_item(name) for name in names[:6]]


def _artifact_items(captured: dict) -> list[dict]:
    kind = infer_deliverable_type(captured)
    audience = infer_audience(captured)
    names = ARTIFACTS_BY_TYPE.get(kind) or [
        "{deliverable} ready for {audience}", "Process documentation", "Reflection on learning",
    ]
    return [
        make_item(name.replace("{audience}", audience).replace("{deliverable}", kind.capitalize()))
        for name in names
    ]


def _criteria_items(captured: dict) -> list[dict]:
    audience = infer_audience(captured)
    return [make_item(c.replace("{audience}", audience)) for c in DEFAULT_CRITERIA]


_ITEM_GENERATORS = {
    StepId.PHASES: _phase_items,
    StepId.MILESTONES: _milestone_items,
    StepId.ARTIFACTS: _artifact_items,
    StepId.CRITERIA: _criteria_items,
}


def fallback_items(stage_step_id: str, captured: dict) -> list[dict]:
    """Return a non-empty deterministic item set for a compound step.

    Raises:
        ValueError: If the step is not a compound step.
    """
    step = find_step(stage_step_id)[2]
    if step.step not in _ITEM_GENERATORS:
        raise ValueError(f"Step '{step.key}' has no item suggestions")
    return _ITEM_GENERATORS[step.step](captured)


def refine_item_fallback(item: dict, instruction: str) -> dict:
    """Apply a refinement instruction without the LLM.

    'Rename to X' / 'call it X' replaces the name; anything else is kept
    as a note on the item.
    """
    instruction = " ".join((instruction or "").split())
    match = _RENAME_INSTRUCTION.match(instruction)
    extensions = {**item.get("extensions", {}), "refinement": instruction}
    if match:
        return make_item(match.group(1).strip(" .\"'"), item.get("details", []), extensions)
    details = list(item.get("details", []))
    if instruction:
        details.append(instruction)
    return make_item(item["name"], details, extensions)


# ---------------------------------------------------------------------------
# Messages
# ---------------------------------------------------------------------------

def _prompt_context(captured: dict) -> dict:
    phases = get_value(captured, StepId.PHASES.value)
    return {
        "big_idea": captured_text(captured, StepId.BIG_IDEA.value) or "your concept",
        "essential_question": captured_text(captured, StepId.ESSENTIAL_QUESTION.value) or "still open",
        "phase_names": ", ".join(i["name"] for i in phases.items()) if phases else "your phases",
        "audience": infer_audience(captured),
    }


def step_prompt(step: StepDefinition, captured: dict) -> str:
    return render_message(STEP_PROMPTS[step.step], _prompt_context(captured))


def item_list_message(heading: str, items: list[dict], footer: str = "") -> str:
    return render_message(ITEM_LIST, {"heading": heading, "footer": footer}, items)


def fallback_message(action: str, stage_step_id: str, captured: dict, extra: dict | None = None) -> str:
    """Render the deterministic message for a composer action.

    Args:
        action: Composer action name (greeting, step_prompt, stage_intro,
            clarify, suggest_items, refine_item, complete).
        stage_step_id: The step the message is about.
        captured: The captured record.
        extra: Action details, e.g. 'issues', 'recap_text', 'items'.

    Returns:
        Non-empty message text.
    """
    extra = extra or {}
    step = find_step(stage_step_id)[2]
    prompt = step_prompt(step, captured)
    recap_line = f"{extra['recap_text']}. " if extra.get("recap_text") else ""

    if action == "greeting":
        return render_message(GREETING, {"step_prompt": prompt})
    if action == "stage_intro":
        stage_def = next(s for s in STAGES if s.stage == step.stage)
        return render_message(STAGE_INTRO, {
            "recap_line": recap_line,
            "stage_label": stage_def.label,
            "stage_purpose": stage_def.purpose,
            "step_prompt": prompt,
        })
    if action == "clarify":
        issues = extra.get("issues") or []
        first = issues[0]["message"] if issues else "That didn't quite work."
        return render_message(CLARIFY, {"issue": first, "step_prompt": prompt})
    if action == "suggest_items":
        return item_list_message(
            prompt, extra.get("items") or [],
            "Accept them all, refine or rename one, reorder, or ask for different ones.",
        )
    if action == "refine_item":
        item = extra.get("item") or {}
        return f"Updated '{item.get('name', 'the item')}'. Anything else to change?"
    if action == "complete":
        return render_message(COMPLETE, {"recap_line": recap_line})
    return prompt


DEFAULT_NEXT_ACTIONS = {
    "greeting": ["Let's begin"],
    "step_prompt": ["Show me examples"],
    "stage_intro": ["Continue"],
    "clarify": ["Show me examples", "Try again"],
    "suggest_items": ["Looks good", "Refine one", "Try different ones"],
    "refine_item": ["Looks good", "Refine another"],
    "complete": ["Review my blueprint", "Edit a step"],
}


def fallback_next_actions(action: str, step: StepDefinition | None = None) -> list[str]:
    actions = list(DEFAULT_NEXT_ACTIONS.get(action, []))
    if step is not None and step.skippable and action in ("step_prompt", "stage_intro", "clarify"):
        actions.append("Skip this step")
    return actions


def stage_label(stage: Stage) -> str:
    return next((s.label for s in STAGES if s.stage == stage), "Done")
