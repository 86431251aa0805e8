"""Bounded, relevance-filtered conversation history.

Holds the most recent turns of a session. When the window overflows, the
oldest turns are folded into a single summary entry at the head of the
window instead of being dropped outright.
"""

from datetime import datetime, timezone

from config.settings import CONTEXT_WINDOW_TURNS
from execution.stage_table import Stage
from execution.template_renderer import truncate

ROLES = ("user", "bot", "system")

KIND_MESSAGE = "message"
KIND_CONFIRM = "confirm"
KIND_SUMMARY = "summary"

MAX_SUMMARY_FACTS = 8

_STAGE_ORDER = [s.value for s in Stage]


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _stage_position(stage: str | None) -> int:
    try:
        return _STAGE_ORDER.index(stage)
    except ValueError:
        return -1


class ContextWindowManager:
    """Keeps at most ``max_turns`` entries, summary entry included."""

    def __init__(self, max_turns: int = CONTEXT_WINDOW_TURNS, turns: list[dict] | None = None):
        if max_turns < 2:
            raise ValueError("max_turns must be at least 2")
        self.max_turns = max_turns
        self._turns: list[dict] = [dict(t) for t in (turns or [])]
        self._compact()

    @property
    def turns(self) -> list[dict]:
        return [dict(t) for t in self._turns]

    @property
    def summary(self) -> dict | None:
        if self._turns and self._turns[0]["kind"] == KIND_SUMMARY:
            return dict(self._turns[0])
        return None

    def __len__(self) -> int:
        return len(self._turns)

    def add_turn(
        self,
        role: str,
        text: str,
        stage: str | None = None,
        step: str | None = None,
        kind: str = KIND_MESSAGE,
    ) -> dict:
        """Append a turn, summarizing the oldest turns if over budget.

        Args:
            role: 'user', 'bot', or 'system'.
            text: The message text.
            stage: Stage value the turn belongs to, or None for global turns.
            step: Step value the turn belongs to.
            kind: 'message' or 'confirm' (an accepted answer).

        Returns:
            The stored turn dict.

        Raises:
            ValueError: If role or kind is invalid.
        """
        if role not in ROLES:
            raise ValueError(f"Invalid turn role: {role}")
        if kind not in (KIND_MESSAGE, KIND_CONFIRM):
            raise ValueError(f"Invalid turn kind: {kind}")
        turn = {
            "role": role,
            "text": text,
            "stage": stage,
            "step": step,
            "kind": kind,
            "timestamp": _now(),
        }
        self._turns.append(turn)
        self._compact()
        return dict(turn)

    def clear(self) -> None:
        self._turns = []

    def _compact(self) -> None:
        if len(self._turns) <= self.max_turns:
            return
        existing = self._turns[0] if self._turns[0]["kind"] == KIND_SUMMARY else None
        body = self._turns[1:] if existing else self._turns
        keep = self.max_turns - 1
        evicted, kept = body[: len(body) - keep], body[len(body) - keep :]
        self._turns = [self._summarize(existing, evicted)] + kept

    @staticmethod
    def _summarize(existing: dict | None, evicted: list[dict]) -> dict:
        facts = list(existing.get("facts", [])) if existing else []
        evicted_total = existing.get("evicted", 0) if existing else 0
        for turn in evicted:
            if turn["kind"] == KIND_SUMMARY:
                facts.extend(turn.get("facts", []))
                evicted_total += turn.get("evicted", 0)
                continue
            evicted_total += 1
            if turn["kind"] == KIND_CONFIRM:
                label = (turn.get("step") or "answer").replace("_", " ")
                facts.append(f"{label} confirmed: {truncate(turn['text'], 60)}")
            elif turn["role"] == "user":
                facts.append(f"user said: {truncate(turn['text'], 40)}")
        facts = facts[-MAX_SUMMARY_FACTS:]
        text = "Context summary: " + ("; ".join(facts) if facts else f"{evicted_total} earlier messages")
        return {
            "role": "system",
            "text": text,
            "stage": None,
            "step": None,
            "kind": KIND_SUMMARY,
            "timestamp": _now(),
            "facts": facts,
            "evicted": evicted_total,
        }

    def relevant_context(self, stage: Stage | str) -> list[dict]:
        """Return the turns relevant to composing a message for ``stage``.

        Kept: the summary entry, global turns, every turn of the current
        stage, and confirmed answers from earlier stages. Chatter from
        earlier stages and anything from later stages (reachable after an
        edit back) is dropped.
        """
        current = Stage(stage).value
        position = _stage_position(current)
        relevant = []
        for turn in self._turns:
            turn_stage = turn.get("stage")
            if turn["kind"] == KIND_SUMMARY or turn_stage is None or turn_stage == current:
                relevant.append(dict(turn))
            elif turn["kind"] == KIND_CONFIRM and _stage_position(turn_stage) < position:
                relevant.append(dict(turn))
        return relevant

    def to_list(self) -> list[dict]:
        return self.turns

    @classmethod
    def from_list(cls, turns: list[dict], max_turns: int = CONTEXT_WINDOW_TURNS) -> "ContextWindowManager":
        return cls(max_turns=max_turns, turns=turns)
