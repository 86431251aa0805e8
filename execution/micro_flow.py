"""Suggest/refine/accept sub-flow for compound steps.

A compound step's answer is a set of items (journey phases, milestones,
artifacts, rubric criteria). The micro-flow proposes a candidate set,
lets the user refine, rename, reorder, add or remove items, and only
accepts once the step's minimum count and shape rules are met.

States are treated as values: ``apply`` never modifies the state it is
given, so a rejected action (a "stay") leaves the previous working set
exactly as it was.
"""

import logging
from dataclasses import dataclass, field

from execution import response_composer
from execution.data_capture import (
    MAX_ITEMS,
    METHOD_REFINED,
    METHOD_SELECTED,
    METHOD_TYPED,
    normalize_item,
    normalize_items,
    parse_items,
)
from execution.fallback_content import fallback_items, item_list_message
from execution.input_validator import ISSUE_STRUCTURE, SEVERITY_ERROR, ValidationIssue, validate_items
from execution.stage_table import find_step

logger = logging.getLogger(__name__)

MODE_SUGGESTING = "suggesting"
MODE_REFINING = "refining"
MODE_ACCEPTING = "accepting"

RESULT_UPDATED = "updated"
RESULT_STAY = "stay"
RESULT_ACCEPTED = "accepted"

ACTION_ACCEPT_ALL = "accept_all"
ACTION_REFINE_ITEM = "refine_item"
ACTION_RENAME_ITEM = "rename_item"
ACTION_REORDER = "reorder"
ACTION_REGENERATE = "regenerate"
ACTION_ADD_ITEM = "add_item"
ACTION_REMOVE_ITEM = "remove_item"
ACTION_CANCEL_REFINEMENT = "cancel_refinement"
ACTION_REPLACE_ITEMS = "replace_items"

MICRO_ACTIONS = (
    ACTION_ACCEPT_ALL,
    ACTION_REFINE_ITEM,
    ACTION_RENAME_ITEM,
    ACTION_REORDER,
    ACTION_REGENERATE,
    ACTION_ADD_ITEM,
    ACTION_REMOVE_ITEM,
    ACTION_CANCEL_REFINEMENT,
    ACTION_REPLACE_ITEMS,
)

# Actions still accepted while an item is being refined
_REFINING_ACTIONS = {ACTION_REFINE_ITEM, ACTION_CANCEL_REFINEMENT, ACTION_REGENERATE}

LIST_FOOTER = "Accept them all, refine or rename one, reorder, or ask for different ones."


@dataclass
class MicroAction:
    """A user action against the active micro-flow."""

    kind: str
    index: int | None = None
    to_index: int | None = None
    text: str | None = None


@dataclass
class MicroFlowState:
    """Working state of one compound step."""

    step: str
    suggested_items: list[dict] = field(default_factory=list)
    working_items: list[dict] = field(default_factory=list)
    mode: str = MODE_SUGGESTING
    refining_index: int | None = None
    method: str = METHOD_SELECTED
    fallback_used: bool = False

    def to_dict(self) -> dict:
        return {
            "step": self.step,
            "suggested_items": [dict(i) for i in self.suggested_items],
            "working_items": [dict(i) for i in self.working_items],
            "mode": self.mode,
            "refining_index": self.refining_index,
            "method": self.method,
            "fallback_used": self.fallback_used,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "MicroFlowState":
        return cls(
            step=data["step"],
            suggested_items=normalize_items(data.get("suggested_items")),
            working_items=normalize_items(data.get("working_items")),
            mode=data.get("mode", MODE_SUGGESTING),
            refining_index=data.get("refining_index"),
            method=data.get("method", METHOD_SELECTED),
            fallback_used=bool(data.get("fallback_used", False)),
        )


@dataclass
class MicroFlowResult:
    """Outcome of applying one action."""

    status: str
    state: MicroFlowState
    message: str
    issues: list[ValidationIssue] = field(default_factory=list)
    captured_items: list[dict] | None = None


def _copy_items(items: list[dict]) -> list[dict]:
    return [
        {"name": i["name"], "details": list(i.get("details", [])), "extensions": dict(i.get("extensions", {}))}
        for i in items
    ]


def _evolve(state: MicroFlowState, **changes) -> MicroFlowState:
    data = {
        "step": state.step,
        "suggested_items": _copy_items(state.suggested_items),
        "working_items": _copy_items(state.working_items),
        "mode": state.mode,
        "refining_index": state.refining_index,
        "method": state.method,
        "fallback_used": state.fallback_used,
    }
    data.update(changes)
    return MicroFlowState(**data)


def _stay(state: MicroFlowState, message: str, issues: list[ValidationIssue] | None = None) -> MicroFlowResult:
    return MicroFlowResult(status=RESULT_STAY, state=state, message=message, issues=issues or [])


def _updated(state: MicroFlowState, heading: str) -> MicroFlowResult:
    return MicroFlowResult(
        status=RESULT_UPDATED,
        state=state,
        message=item_list_message(heading, state.working_items, LIST_FOOTER),
    )


def _valid_index(state: MicroFlowState, index) -> bool:
    return isinstance(index, int) and not isinstance(index, bool) and 0 <= index < len(state.working_items)


def _generate(stage_step_id: str, captured: dict, context_turns, timeout_ms) -> tuple[list[dict], str, bool]:
    """Ask the composer for a candidate set; guarantee a non-empty result."""
    response = response_composer.compose(
        response_composer.ACTION_SUGGEST_ITEMS,
        stage_step_id,
        captured,
        context_turns,
        timeout_ms,
    )
    items = normalize_items(response.structured_items or [])[:MAX_ITEMS]
    if not items:
        logger.warning("No suggested items for %s. Using fallback generator.", stage_step_id)
        items = fallback_items(stage_step_id, captured)
        return items, item_list_message(response.text, items, LIST_FOOTER), True
    if response.fallback_used:
        return items, response.text, True
    return items, item_list_message(response.text, items, LIST_FOOTER), False


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def init(
    stage_step_id: str,
    captured: dict,
    context_turns: list[dict] | None = None,
    seed_items: list[dict] | None = None,
    timeout_ms: int | None = None,
) -> tuple[MicroFlowState, str]:
    """Start a micro-flow for a compound step.

    Args:
        stage_step_id: The compound step.
        captured: The captured record, used for suggestions.
        context_turns: Relevant conversation turns for the composer.
        seed_items: Items to start from instead of generating (used when
            a step is re-entered and already has a captured value).
        timeout_ms: Time budget for the generation call.

    Returns:
        Tuple of (MicroFlowState in suggesting mode, message text).

    Raises:
        ValueError: If the step is not a compound step.
    """
    step = find_step(stage_step_id)[2]
    if not step.compound:
        raise ValueError(f"Step '{step.key}' is not a compound step")

    seeded = normalize_items(seed_items or [])
    if seeded:
        state = MicroFlowState(
            step=step.key,
            suggested_items=_copy_items(seeded),
            working_items=_copy_items(seeded),
        )
        message = item_list_message(
            f"Here are your current {step.label.lower()}.", seeded,
            "Keep them as they are, or change anything you like.",
        )
        return state, message

    items, message, fallback_used = _generate(step.key, captured, context_turns, timeout_ms)
    state = MicroFlowState(
        step=step.key,
        suggested_items=_copy_items(items),
        working_items=_copy_items(items),
        fallback_used=fallback_used,
    )
    return state, message


def apply(
    state: MicroFlowState,
    action: MicroAction,
    captured: dict,
    context_turns: list[dict] | None = None,
    timeout_ms: int | None = None,
) -> MicroFlowResult:
    """Apply one action to a micro-flow state.

    Args:
        state: The current state (not modified).
        action: The action to apply.
        captured: The captured record, used when generation is needed.
        context_turns: Relevant conversation turns for the composer.
        timeout_ms: Time budget for generation calls.

    Returns:
        MicroFlowResult: 'updated' with a new state, 'stay' with the
        unchanged state and a reason, or 'accepted' with the final items.
    """
    step = find_step(state.step)[2]

    if action.kind not in MICRO_ACTIONS:
        return _stay(state, f"Unknown action '{action.kind}'.")
    if state.mode == MODE_ACCEPTING:
        return _stay(state, f"The {step.label.lower()} are already accepted.")
    if state.mode == MODE_REFINING and action.kind not in _REFINING_ACTIONS:
        name = state.working_items[state.refining_index]["name"]
        return _stay(state, f"Tell me how to change '{name}', or cancel the refinement first.")

    if action.kind == ACTION_ACCEPT_ALL:
        count = len(state.working_items)
        if count < step.min_items:
            return _stay(
                state,
                f"A minimum of {step.min_items} {step.label.lower()} is required (currently {count}).",
                [ValidationIssue(
                    ISSUE_STRUCTURE, SEVERITY_ERROR,
                    f"At least {step.min_items} items are required.",
                )],
            )
        outcome = validate_items(state.working_items, step.key)
        if not outcome.is_valid:
            return _stay(state, outcome.errors[0].message, outcome.issues)
        accepted = _evolve(state, mode=MODE_ACCEPTING, refining_index=None)
        return MicroFlowResult(
            status=RESULT_ACCEPTED,
            state=accepted,
            message=f"{step.label} accepted.",
            issues=outcome.issues,
            captured_items=_copy_items(accepted.working_items),
        )

    if action.kind == ACTION_REFINE_ITEM:
        index = state.refining_index if action.index is None else action.index
        if not _valid_index(state, index):
            return _stay(state, "Pick one of the listed items to refine.")
        instruction = (action.text or "").strip()
        if not instruction:
            refining = _evolve(state, mode=MODE_REFINING, refining_index=index)
            name = state.working_items[index]["name"]
            return MicroFlowResult(
                status=RESULT_UPDATED,
                state=refining,
                message=f"What would you like to change about '{name}'?",
            )
        response = response_composer.compose(
            response_composer.ACTION_REFINE_ITEM,
            step.key,
            captured,
            context_turns,
            timeout_ms,
            extra={"item": state.working_items[index], "instruction": instruction},
        )
        revised = normalize_item((response.structured_items or [None])[0])
        if revised is None:
            logger.warning("Refinement for %s returned no item. Keeping original.", step.key)
            return _stay(state, "I couldn't apply that change. Try rephrasing it.")
        working = _copy_items(state.working_items)
        working[index] = revised
        refined = _evolve(
            state, working_items=working, mode=MODE_SUGGESTING, refining_index=None,
            method=METHOD_REFINED, fallback_used=response.fallback_used,
        )
        return _updated(refined, f"Updated item {index + 1}.")

    if action.kind == ACTION_CANCEL_REFINEMENT:
        if state.mode != MODE_REFINING:
            return _stay(state, "Nothing is being refined right now.")
        return _updated(_evolve(state, mode=MODE_SUGGESTING, refining_index=None), "Refinement cancelled.")

    if action.kind == ACTION_RENAME_ITEM:
        text = " ".join((action.text or "").split())
        if not _valid_index(state, action.index) or not text:
            return _stay(state, "Give the item number and its new name.")
        working = _copy_items(state.working_items)
        working[action.index]["name"] = text
        return _updated(_evolve(state, working_items=working, method=METHOD_REFINED), f"Renamed item {action.index + 1}.")

    if action.kind == ACTION_REORDER:
        if not _valid_index(state, action.index) or not _valid_index(state, action.to_index):
            return _stay(state, "Both positions must refer to listed items.")
        working = _copy_items(state.working_items)
        working.insert(action.to_index, working.pop(action.index))
        return _updated(_evolve(state, working_items=working, method=METHOD_REFINED), "Reordered.")

    if action.kind == ACTION_ADD_ITEM:
        item = normalize_item(action.text or "")
        if item is None:
            return _stay(state, "Tell me the item to add.")
        if len(state.working_items) >= MAX_ITEMS:
            return _stay(state, f"There can be at most {MAX_ITEMS} items.")
        working = _copy_items(state.working_items) + [item]
        return _updated(_evolve(state, working_items=working, method=METHOD_REFINED), "Added.")

    if action.kind == ACTION_REMOVE_ITEM:
        if not _valid_index(state, action.index):
            return _stay(state, "Pick one of the listed items to remove.")
        working = _copy_items(state.working_items)
        working.pop(action.index)
        return _updated(_evolve(state, working_items=working, method=METHOD_REFINED), "Removed.")

    if action.kind == ACTION_REPLACE_ITEMS:
        items = parse_items(action.text or "")
        if not items:
            return _stay(state, "I couldn't find any items in that. List one per line.")
        return _updated(_evolve(state, working_items=items, method=METHOD_TYPED), "Here is your list.")

    # ACTION_REGENERATE
    items, message, fallback_used = _generate(step.key, captured, context_turns, timeout_ms)
    regenerated = MicroFlowState(
        step=step.key,
        suggested_items=_copy_items(items),
        working_items=_copy_items(items),
        fallback_used=fallback_used,
    )
    return MicroFlowResult(status=RESULT_UPDATED, state=regenerated, message=message)


def view(state: MicroFlowState | None) -> dict | None:
    """Public representation of the active micro-flow for clients."""
    if state is None:
        return None
    step = find_step(state.step)[2]
    return {
        "step": state.step,
        "mode": state.mode,
        "refining_index": state.refining_index,
        "min_items": step.min_items,
        "working_items": _copy_items(state.working_items),
        "suggested_items": _copy_items(state.suggested_items),
    }
