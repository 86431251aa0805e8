"""Conversation state machine for a blueprint session.

Drives one Session through the stage/step table: validates scalar answers,
routes compound steps through the micro-flow, captures confirmed values,
produces a recap when a stage is exited, and supports edit/skip/reset.

Every public operation on a machine is serialized with a per-session lock,
so a duplicate or late submit cannot double-advance the cursor. Separate
machines share nothing and can run concurrently.

Illegal requests (editing ahead, skipping a required step, stale events)
return a 'rejected' TurnResult and leave the session untouched. They are
not exceptions.
"""

import logging
import re
import threading
from dataclasses import dataclass, field

from config.settings import COMPOSE_TIMEOUT_MS
from execution import data_capture, input_validator, micro_flow, recap_generator, response_composer
from execution.context_window import KIND_CONFIRM, KIND_MESSAGE
from execution.data_capture import METHOD_SELECTED, METHOD_SKIPPED, METHOD_TYPED
from execution.session import Session
from execution.stage_table import (
    STAGES,
    TOTAL_STEPS,
    Stage,
    StepDefinition,
    find_step,
    is_last_step_of_stage,
    next_position,
    ordinal,
)

logger = logging.getLogger(__name__)

STATUS_ADVANCED = "advanced"
STATUS_STAY = "stay"
STATUS_REJECTED = "rejected"
STATUS_UPDATED = "updated"
STATUS_COMPLETE = "complete"

EVENT_TEXT = "text"
EVENT_SELECTION = "selection"
EVENT_CONTROL = "control"

CONTROL_ADVANCE = "advance"
CONTROL_EDIT = "edit"
CONTROL_SKIP = "skip"
CONTROL_RESET = "reset"

CONTROL_ACTIONS = (CONTROL_ADVANCE, CONTROL_EDIT, CONTROL_SKIP, CONTROL_RESET) + micro_flow.MICRO_ACTIONS

ACCEPT_PHRASES = re.compile(
    r"^(yes|yep|ok(ay)?|sure|accept( all| them)?|looks good|sounds good|perfect|great|"
    r"keep (them|these|it)|continue|done)[.! ]*$",
    re.IGNORECASE,
)
REGENERATE_PHRASES = re.compile(
    r"^(regenerate|try again|different ones?|new ones|other options|more options|"
    r"show me (others|different ones))[.! ]*$",
    re.IGNORECASE,
)


@dataclass
class TurnResult:
    """What the host receives after each event."""

    status: str
    message: str
    cursor: dict
    progress: dict
    issues: list[dict] = field(default_factory=list)
    suggestions: list[str] = field(default_factory=list)
    suggested_next_actions: list[str] = field(default_factory=list)
    available_actions: list[str] = field(default_factory=list)
    micro_flow: dict | None = None
    recap: dict | None = None
    captured_value: dict | None = None
    warnings: list[str] = field(default_factory=list)
    fallback_used: bool = False

    def to_dict(self) -> dict:
        return {
            "status": self.status,
            "message": self.message,
            "cursor": self.cursor,
            "progress": self.progress,
            "issues": self.issues,
            "suggestions": self.suggestions,
            "suggested_next_actions": self.suggested_next_actions,
            "available_actions": self.available_actions,
            "micro_flow": self.micro_flow,
            "recap": self.recap,
            "captured_value": self.captured_value,
            "warnings": self.warnings,
            "fallback_used": self.fallback_used,
        }


class ConversationStateMachine:
    """Owns one Session and applies events to it, one at a time."""

    def __init__(self, session: Session, store=None, timeout_ms: int | None = None):
        self.session = session
        self._store = store
        self._timeout_ms = timeout_ms or COMPOSE_TIMEOUT_MS
        self._lock = threading.Lock()

    @property
    def session_id(self) -> str:
        return self.session.session_id

    # -----------------------------------------------------------------------
    # Public operations (serialized)
    # -----------------------------------------------------------------------

    def start(self) -> TurnResult:
        """Return the opening (or resume) message for the session."""
        with self._lock:
            return self._finish(self._start())

    def handle_event(self, event: dict) -> TurnResult:
        """Dispatch an ingress event: text, selection, or control."""
        with self._lock:
            return self._finish(self._dispatch(event))

    def advance(self, event: dict | None = None) -> TurnResult:
        with self._lock:
            return self._finish(self._advance(event or {"kind": EVENT_CONTROL, "action": CONTROL_ADVANCE}))

    def edit(self, target: str) -> TurnResult:
        with self._lock:
            return self._finish(self._edit(target))

    def skip(self) -> TurnResult:
        with self._lock:
            return self._finish(self._skip())

    def reset(self, preserve_earlier_stages: bool = False) -> TurnResult:
        with self._lock:
            return self._finish(self._reset(preserve_earlier_stages))

    def get_progress(self) -> dict:
        """Progress computed from the static table and the cursor only."""
        s = self.session
        if s.complete:
            return {
                "current_ordinal": TOTAL_STEPS,
                "total_ordinals": TOTAL_STEPS,
                "percentage": 100,
                "current_stage_id": Stage.DONE.value,
                "current_step_id": None,
            }
        position = ordinal(s.stage_index, s.step_index)
        return {
            "current_ordinal": position,
            "total_ordinals": TOTAL_STEPS,
            "percentage": round((position - 1) / TOTAL_STEPS * 100),
            "current_stage_id": s.current_stage.value,
            "current_step_id": s.current_step.key,
        }

    def snapshot(self) -> dict:
        with self._lock:
            return self.session.to_snapshot()

    def close(self) -> None:
        """Detach from the store. Turns still in flight finish but are no longer saved."""
        with self._lock:
            self._store = None

    # -----------------------------------------------------------------------
    # Result helpers
    # -----------------------------------------------------------------------

    def _cursor(self) -> dict:
        s = self.session
        return {
            "stage_index": s.stage_index,
            "step_index": s.step_index,
            "stage_step_id": None if s.complete else s.current_step.key,
            "complete": s.complete,
        }

    def _available_actions(self) -> list[str]:
        s = self.session
        if s.complete:
            return [CONTROL_EDIT, CONTROL_RESET]
        step = s.current_step
        if step.compound and s.micro_flow is not None:
            if s.micro_flow.mode == micro_flow.MODE_REFINING:
                actions = [micro_flow.ACTION_REFINE_ITEM, micro_flow.ACTION_CANCEL_REFINEMENT, micro_flow.ACTION_REGENERATE]
            else:
                actions = [CONTROL_ADVANCE] + [a for a in micro_flow.MICRO_ACTIONS if a != micro_flow.ACTION_CANCEL_REFINEMENT]
        else:
            actions = [CONTROL_ADVANCE]
            if step.skippable:
                actions.append(CONTROL_SKIP)
        return actions + [CONTROL_EDIT, CONTROL_RESET]

    def _result(self, status: str, message: str, **kwargs) -> TurnResult:
        return TurnResult(
            status=status,
            message=message,
            cursor=self._cursor(),
            progress=self.get_progress(),
            available_actions=self._available_actions(),
            micro_flow=micro_flow.view(self.session.micro_flow),
            **kwargs,
        )

    def _rejected(self, message: str) -> TurnResult:
        return self._result(STATUS_REJECTED, message)

    def _say(self, text: str, stage: Stage | None = None, step: StepDefinition | None = None) -> None:
        self.session.history.add_turn(
            "bot", text,
            stage=stage.value if stage else None,
            step=step.step.value if step else None,
        )

    def _hear(self, text: str, step: StepDefinition, kind: str = KIND_MESSAGE) -> None:
        self.session.history.add_turn("user", text, stage=step.stage.value, step=step.step.value, kind=kind)

    def _finish(self, result: TurnResult) -> TurnResult:
        if result.status != STATUS_REJECTED:
            self.session.touch()
            if self._store is not None:
                self._store.submit(self.session_id, self.session.to_snapshot())
        if self._store is not None:
            result.warnings = self._store.pop_warnings(self.session_id)
        return result

    def _context(self, stage: Stage) -> list[dict]:
        return self.session.history.relevant_context(stage)

    # -----------------------------------------------------------------------
    # Dispatch
    # -----------------------------------------------------------------------

    def _matches_current(self, expected: str) -> bool:
        s = self.session
        if s.complete:
            return expected == Stage.DONE.value
        step = s.current_step
        return expected in (step.key, step.step.value)

    def _dispatch(self, event) -> TurnResult:
        if not isinstance(event, dict):
            return self._rejected("Malformed event.")
        expected = event.get("expected_step")
        if expected and not self._matches_current(expected):
            logger.info("Rejected stale event for %s (expected %s)", self.session_id, expected)
            return self._rejected("That answer was for an earlier step and has been ignored.")

        kind = event.get("kind")
        if kind in (EVENT_TEXT, EVENT_SELECTION):
            return self._advance(event)
        if kind != EVENT_CONTROL:
            return self._rejected(f"Unknown event kind '{kind}'.")

        action = event.get("action")
        if action == CONTROL_EDIT:
            return self._edit(event.get("target"))
        if action == CONTROL_SKIP:
            return self._skip()
        if action == CONTROL_RESET:
            return self._reset(bool(event.get("preserve_earlier_stages", False)))
        if action == CONTROL_ADVANCE or action in micro_flow.MICRO_ACTIONS:
            return self._advance(event)
        return self._rejected(f"Unknown control action '{action}'.")

    # -----------------------------------------------------------------------
    # Start / open step
    # -----------------------------------------------------------------------

    def _start(self) -> TurnResult:
        s = self.session
        if s.complete:
            return self._result(STATUS_COMPLETE, "Your blueprint is complete. Edit a step or start over.")
        step = s.current_step
        if len(s.history) == 0 and s.stage_index == 0 and s.step_index == 0 and not s.captured:
            response = response_composer.compose(
                response_composer.ACTION_GREETING, step.key, s.captured, [], self._timeout_ms,
            )
            self._say(response.text)
            return self._result(
                STATUS_UPDATED, response.text,
                suggested_next_actions=response.suggested_next_actions,
                fallback_used=response.fallback_used,
            )
        text, chips, fallback_used = self._open_step(step)
        return self._result(STATUS_UPDATED, text, suggested_next_actions=chips, fallback_used=fallback_used)

    def _open_step(self, step: StepDefinition, recap=None) -> tuple[str, list[str], bool]:
        """Compose the prompt for a step and start its micro-flow if compound."""
        s = self.session
        context = self._context(step.stage)
        action = response_composer.ACTION_STAGE_INTRO if recap else response_composer.ACTION_STEP_PROMPT
        extra = {"recap_text": recap.summary_text} if recap else {}

        if step.compound:
            existing = s.captured.get(step.key)
            seed = existing.items() if existing is not None and not existing.skipped else None
            state, micro_message = micro_flow.init(step.key, s.captured, context, seed, self._timeout_ms)
            s.micro_flow = state
            text = micro_message
            fallback_used = state.fallback_used
            if recap is not None:
                intro = response_composer.compose(action, step.key, s.captured, context, self._timeout_ms, extra)
                text = f"{intro.text}\n\n{micro_message}"
                fallback_used = fallback_used or intro.fallback_used
            chips = response_composer.get_fallback_response(
                response_composer.ACTION_SUGGEST_ITEMS, step.key, s.captured,
            ).suggested_next_actions
            self._say(text, step.stage, step)
            return text, chips, fallback_used

        response = response_composer.compose(action, step.key, s.captured, context, self._timeout_ms, extra)
        text = response.text
        existing = s.captured.get(step.key)
        if existing is not None:
            current = "skipped" if existing.skipped else existing.as_text()
            text = f"{text}\n\nCurrent answer: {current}. Send a new answer, or continue to keep it."
        self._say(text, step.stage, step)
        return text, response.suggested_next_actions, response.fallback_used

    # -----------------------------------------------------------------------
    # Advance
    # -----------------------------------------------------------------------

    def _advance(self, event: dict) -> TurnResult:
        s = self.session
        if s.complete:
            return self._rejected("The blueprint is already complete. Edit a step or reset to change it.")
        step = s.current_step
        if step.compound:
            return self._advance_compound(step, event)
        return self._advance_scalar(step, event)

    def _advance_scalar(self, step: StepDefinition, event: dict) -> TurnResult:
        s = self.session
        kind = event.get("kind")
        value = event.get("value")

        if kind == EVENT_CONTROL:
            if event.get("action") != CONTROL_ADVANCE:
                return self._rejected(f"'{event.get('action')}' only applies to item lists.")
            existing = s.captured.get(step.key)
            if value in (None, "") and existing is not None:
                self._hear(existing.as_text() or "(kept)", step, KIND_CONFIRM)
                return self._complete_step(step, existing, existing.method)
            method = METHOD_TYPED
        elif kind == EVENT_SELECTION:
            method = METHOD_SELECTED
            if value in (None, ""):
                options = input_validator.STEP_SUGGESTIONS.get(step.step, [])
                index = event.get("item_index")
                if isinstance(index, int) and 0 <= index < len(options):
                    value = options[index]
        else:
            method = METHOD_TYPED

        outcome = input_validator.validate(value, step.key, data_capture.text_context(s.captured))
        if not outcome.is_valid:
            self._hear(value if isinstance(value, str) else "", step)
            issues = [i.to_dict() for i in outcome.issues]
            response = response_composer.compose(
                response_composer.ACTION_CLARIFY, step.key, s.captured,
                self._context(step.stage), self._timeout_ms, {"issues": issues},
            )
            self._say(response.text, step.stage, step)
            return self._result(
                STATUS_STAY, response.text,
                issues=issues,
                suggestions=outcome.suggestions,
                suggested_next_actions=response.suggested_next_actions,
                fallback_used=response.fallback_used,
            )

        self._hear(outcome.transformed_input, step, KIND_CONFIRM)
        return self._complete_step(step, outcome.transformed_input, method, outcome.issues, outcome.suggestions)

    def _micro_action(self, event: dict) -> micro_flow.MicroAction:
        state = self.session.micro_flow
        kind = event.get("kind")
        value = event.get("value")
        if kind == EVENT_CONTROL:
            action = event.get("action")
            if action == CONTROL_ADVANCE:
                return micro_flow.MicroAction(micro_flow.ACTION_ACCEPT_ALL)
            return micro_flow.MicroAction(
                action,
                index=event.get("item_index"),
                to_index=event.get("to_index"),
                text=value,
            )
        if kind == EVENT_SELECTION:
            if isinstance(value, str) and value.strip():
                return micro_flow.MicroAction(micro_flow.ACTION_RENAME_ITEM, index=event.get("item_index"), text=value)
            return micro_flow.MicroAction(micro_flow.ACTION_REFINE_ITEM, index=event.get("item_index"))

        text = value if isinstance(value, str) else ""
        if state.mode == micro_flow.MODE_REFINING:
            return micro_flow.MicroAction(micro_flow.ACTION_REFINE_ITEM, text=text)
        if ACCEPT_PHRASES.match(text.strip()):
            return micro_flow.MicroAction(micro_flow.ACTION_ACCEPT_ALL)
        if REGENERATE_PHRASES.match(text.strip()):
            return micro_flow.MicroAction(micro_flow.ACTION_REGENERATE)
        return micro_flow.MicroAction(micro_flow.ACTION_REPLACE_ITEMS, text=text)

    def _advance_compound(self, step: StepDefinition, event: dict) -> TurnResult:
        s = self.session
        if s.micro_flow is None or s.micro_flow.step != step.key:
            text, chips, fallback_used = self._open_step(step)
            return self._result(STATUS_UPDATED, text, suggested_next_actions=chips, fallback_used=fallback_used)

        if event.get("kind") == EVENT_TEXT and isinstance(event.get("value"), str):
            self._hear(event["value"], step)

        action = self._micro_action(event)
        result = micro_flow.apply(s.micro_flow, action, s.captured, self._context(step.stage), self._timeout_ms)
        issues = [i.to_dict() for i in result.issues]

        if result.status == micro_flow.RESULT_STAY:
            self._say(result.message, step.stage, step)
            return self._result(STATUS_STAY, result.message, issues=issues)

        if result.status == micro_flow.RESULT_UPDATED:
            s.micro_flow = result.state
            self._say(result.message, step.stage, step)
            return self._result(STATUS_UPDATED, result.message, fallback_used=result.state.fallback_used)

        names = "; ".join(item["name"] for item in result.captured_items)
        self._hear(names, step, KIND_CONFIRM)
        return self._complete_step(step, result.captured_items, result.state.method, result.issues)

    def _complete_step(
        self,
        step: StepDefinition,
        value,
        method: str,
        issues: list | None = None,
        suggestions: list[str] | None = None,
    ) -> TurnResult:
        """Capture a confirmed value, recap on stage exit, and move on."""
        s = self.session
        s.captured = data_capture.capture(s.captured, step.key, value, method)
        s.micro_flow = None
        entry = s.captured[step.key]

        recap = None
        if is_last_step_of_stage(s.stage_index, s.step_index):
            recap = recap_generator.generate(step.stage, data_capture.stage_slice(s.captured, step.stage))
            s.recaps[step.stage.value] = recap
            logger.info("Session %s completed stage %s", self.session_id, step.stage.value)

        issue_dicts = [i.to_dict() if hasattr(i, "to_dict") else i for i in (issues or [])]
        nxt = next_position(s.stage_index, s.step_index)
        if nxt is None:
            s.complete = True
            response = response_composer.compose(
                response_composer.ACTION_COMPLETE, step.key, s.captured,
                self._context(step.stage), self._timeout_ms,
                {"recap_text": recap.summary_text if recap else ""},
            )
            self._say(response.text)
            return self._result(
                STATUS_COMPLETE, response.text,
                issues=issue_dicts,
                suggestions=suggestions or [],
                suggested_next_actions=response.suggested_next_actions,
                recap=recap.to_dict() if recap else None,
                captured_value=entry.to_dict(),
                fallback_used=response.fallback_used,
            )

        s.stage_index, s.step_index = nxt
        text, chips, fallback_used = self._open_step(s.current_step, recap)
        return self._result(
            STATUS_ADVANCED, text,
            issues=issue_dicts,
            suggestions=suggestions or [],
            suggested_next_actions=chips,
            recap=recap.to_dict() if recap else None,
            captured_value=entry.to_dict(),
            fallback_used=fallback_used,
        )

    # -----------------------------------------------------------------------
    # Edit / skip / reset
    # -----------------------------------------------------------------------

    def _edit(self, target) -> TurnResult:
        s = self.session
        try:
            stage_index, step_index, step = find_step(target if isinstance(target, str) else "")
        except ValueError:
            return self._rejected(f"Unknown step '{target}'.")
        if not s.complete and (stage_index, step_index) > (s.stage_index, s.step_index):
            return self._rejected("You can only go back to steps you've already reached.")

        for stage_def in STAGES[stage_index:]:
            s.recaps.pop(stage_def.stage.value, None)
        s.complete = False
        s.micro_flow = None
        s.stage_index, s.step_index = stage_index, step_index
        logger.info("Session %s editing %s", self.session_id, step.key)

        text, chips, fallback_used = self._open_step(step)
        return self._result(STATUS_UPDATED, text, suggested_next_actions=chips, fallback_used=fallback_used)

    def _skip(self) -> TurnResult:
        s = self.session
        if s.complete:
            return self._rejected("The blueprint is already complete.")
        step = s.current_step
        if not step.skippable:
            return self._rejected(f"The {step.label} step can't be skipped.")
        self._hear("(skipped)", step, KIND_CONFIRM)
        return self._complete_step(step, None, METHOD_SKIPPED)

    def _reset(self, preserve_earlier_stages: bool) -> TurnResult:
        s = self.session
        start = s.stage_index if preserve_earlier_stages else 0
        cleared_stages = [stage_def.stage for stage_def in STAGES[start:]]
        s.captured = data_capture.discard(
            s.captured,
            [step.key for stage_def in STAGES[start:] for step in stage_def.steps],
        )
        for stage in cleared_stages:
            s.recaps.pop(stage.value, None)
        s.stage_index, s.step_index = start, 0
        s.complete = False
        s.micro_flow = None
        if not preserve_earlier_stages:
            s.history.clear()
        logger.info("Session %s reset from stage %s", self.session_id, STAGES[start].stage.value)

        if start == 0 and not preserve_earlier_stages:
            return self._start()
        text, chips, fallback_used = self._open_step(s.current_step)
        return self._result(STATUS_UPDATED, text, suggested_next_actions=chips, fallback_used=fallback_used)
