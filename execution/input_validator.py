"""Per-step input validation and canonicalization.

Rules are keyed by step and are pure: regex and word checks only, no I/O,
no logging. Malformed input (None, numbers, empty strings) always comes
back as a ValidationOutcome carrying an error, never as an exception.

Only ``error`` issues block advancement; ``warning`` and ``info`` issues
are surfaced to the user as coaching.
"""

import re
from dataclasses import dataclass, field

from execution.data_capture import parse_items
from execution.stage_table import SHAPE_ITEMS, StepDefinition, StepId, find_step

ISSUE_STRUCTURE = "structure"
ISSUE_CONTENT = "content"
ISSUE_CLARITY = "clarity"
ISSUE_ALIGNMENT = "alignment"

SEVERITY_ERROR = "error"
SEVERITY_WARNING = "warning"
SEVERITY_INFO = "info"

MIN_BIG_IDEA_WORDS = 3
MIN_IMPACT_WORDS = 3

QUESTION_STEMS = [
    r"^how\b",
    r"^what\b",
    r"^why\b",
    r"^in what ways\b",
    r"^to what extent\b",
    r"^should\b",
    r"^can\b",
    r"^will\b",
    r"^who\b",
    r"^which\b",
    r"^where\b",
    r"^when\b",
]

CLOSED_QUESTION_STARTS = [
    r"^is\b",
    r"^are\b",
    r"^do\b",
    r"^does\b",
    r"^did\b",
    r"^was\b",
    r"^were\b",
    r"^can\b",
]

DEPTH_WORDS = [
    r"\bhow\b",
    r"\bwhy\b",
    r"\brelationship",
    r"\bimpact",
    r"\bchange",
    r"\binfluence",
    r"\bshape",
    r"\bpower\b",
    r"\bidentity\b",
    r"\bsystem",
    r"\bbalance\b",
    r"\bresilien",
    r"\bconnect",
    r"\bsustainab",
    r"\bjustice\b",
    r"\bcommunit",
]

ACTION_VERBS = [
    "create", "design", "build", "develop", "launch", "solve", "investigate",
    "research", "explore", "produce", "prototype", "propose", "write",
    "organize", "present", "publish", "curate", "advocate", "plan", "make",
]

AUDIENCE_PATTERNS = [
    r"\bfor\b",
    r"\bto help\b",
    r"\bcommunity\b",
    r"\bstudents\b",
    r"\bpeople\b",
    r"\baudience\b",
    r"\bfamilies\b",
    r"\bcouncil\b",
    r"\bresidents\b",
    r"\bneighbo(u)?rs?\b",
    r"\bpartners?\b",
    r"\bvisitors\b",
    r"\bleaders\b",
    r"\bpublic\b",
]

VAGUE_WORDS = [
    r"\bsomething\b",
    r"\bthings?\b",
    r"\bstuff\b",
    r"\betc\.?",
]

ACTIVE_VERBS = [
    "research", "interview", "build", "test", "analyze", "analyse", "design",
    "create", "present", "write", "visit", "survey", "collect", "draft",
    "prototype", "explore", "investigate", "discuss", "debate", "map", "model",
    "measure", "observe", "reflect", "share", "plan", "brainstorm", "critique",
    "revise", "experiment", "read", "record", "compare", "pitch", "rehearse",
]

GENERIC_ITEM_NAME = re.compile(
    r"^(phase|milestone|artifact|criterion|criteria|step|item|stage)\s*#?\d+$", re.IGNORECASE
)

STOPWORDS = {
    "that", "this", "with", "from", "have", "will", "what", "when", "where",
    "which", "their", "there", "they", "them", "into", "about", "might",
    "would", "could", "should", "does", "were", "been", "being", "these",
    "those", "your", "ours", "make", "more", "most", "some", "such", "than",
    "then", "also", "over", "each", "very", "just", "like", "many", "much",
    "students", "student", "project", "learn", "learning",
}

STEP_SUGGESTIONS = {
    StepId.BIG_IDEA: [
        "How systems change over time",
        "How innovation emerges from constraints",
        "The relationship between people and place",
    ],
    StepId.ESSENTIAL_QUESTION: [
        "How might we reduce local waste?",
        "What makes a solution fair for everyone?",
        "How do policies shape everyday choices?",
    ],
    StepId.CHALLENGE: [
        "Design an evidence-based proposal for city council",
        "Prototype a solution for a school exhibition",
        "Produce a community resource to shift behaviors",
    ],
    StepId.ACTIVITIES: [
        "Interview local experts",
        "Collect and analyze field data",
        "Prototype and test with users",
    ],
    StepId.RESOURCES: [
        "A local expert or community partner",
        "Primary sources or open datasets",
        "Maker space or design tools",
    ],
    StepId.IMPACT: [
        "Present findings to city council at a public meeting",
        "Host an exhibition night for families and neighbors",
        "Publish a guide shared with community partners",
    ],
}


@dataclass
class ValidationIssue:
    """A single typed finding about an input."""

    type: str
    severity: str
    message: str

    def to_dict(self) -> dict:
        return {"type": self.type, "severity": self.severity, "message": self.message}


@dataclass
class ValidationOutcome:
    """Result of validating one input against one step's rules."""

    is_valid: bool
    issues: list[ValidationIssue] = field(default_factory=list)
    suggestions: list[str] = field(default_factory=list)
    transformed_input: str | None = None

    @property
    def errors(self) -> list[ValidationIssue]:
        return [i for i in self.issues if i.severity == SEVERITY_ERROR]

    def to_dict(self) -> dict:
        return {
            "is_valid": self.is_valid,
            "issues": [i.to_dict() for i in self.issues],
            "suggestions": list(self.suggestions),
            "transformed_input": self.transformed_input,
        }


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _words(text: str) -> list[str]:
    return re.findall(r"[A-Za-z0-9']+", text)


def _matches_any(patterns: list[str], text: str) -> bool:
    return any(re.search(p, text, re.IGNORECASE) for p in patterns)


def _stem(word: str) -> str:
    for suffix in ("ing", "ies", "es", "ed", "s"):
        if word.endswith(suffix) and len(word) - len(suffix) >= 4:
            word = word[: -len(suffix)]
            break
    # change/changes, community/communities
    if len(word) > 3 and word[-1] in "eyi":
        word = word[:-1]
    return word


def meaningful_vocabulary(text: str) -> set[str]:
    """Return stemmed content words (longer than 3 chars, not stopwords)."""
    return {
        _stem(w)
        for w in (w.lower() for w in _words(text or ""))
        if len(w) > 3 and w not in STOPWORDS
    }


def _alignment_issue(text: str, earlier: str, label: str) -> list[ValidationIssue]:
    if not earlier:
        return []
    if meaningful_vocabulary(text) & meaningful_vocabulary(earlier):
        return []
    return [ValidationIssue(
        ISSUE_ALIGNMENT, SEVERITY_INFO,
        f"This doesn't share any key words with your {label}. Check that the two connect.",
    )]


def _has_question_stem(text: str) -> bool:
    return _matches_any(QUESTION_STEMS, text.strip())


def _verb_forms(verbs: list[str]) -> re.Pattern:
    """Compile a whole-word pattern for verbs and their regular inflections.

    'plan' matches plans, planned and planning but not planets;
    'make' matches makes and making but not makeup.
    """
    forms = []
    for verb in verbs:
        base = verb[:-1] if verb.endswith("e") else verb
        forms.append(rf"{verb}(?:s|d)?|{base}(?:es|ed|ing)|{verb}{verb[-1]}(?:ed|ing)")
    return re.compile("|".join(forms))


_ACTION_VERB_FORMS = _verb_forms(ACTION_VERBS)
_ACTIVE_VERB_FORMS = _verb_forms(ACTIVE_VERBS)


def _verb_positions(text: str, forms: re.Pattern) -> list[int]:
    words = [w.lower() for w in _words(text)]
    return [i for i, w in enumerate(words) if forms.fullmatch(w)]


# ---------------------------------------------------------------------------
# Transform
# ---------------------------------------------------------------------------

def _canonical_spacing(text: str, keep_lines: bool) -> str:
    if keep_lines:
        lines = [re.sub(r"[ \t]+", " ", line).strip() for line in text.replace("\r", "\n").split("\n")]
        return "\n".join(line for line in lines if line)
    return re.sub(r"\s+", " ", text).strip()


def transform(raw_input, stage_step_id: str) -> str:
    """Canonicalize raw input for a step. Idempotent.

    Trims and collapses whitespace, capitalizes the first letter, and for
    the essential question appends a missing '?' when a question stem is
    present.

    Args:
        raw_input: The user's raw text. Non-string input yields ''.
        stage_step_id: The step identifier.

    Returns:
        The canonical text.
    """
    step = find_step(stage_step_id)[2]
    if not isinstance(raw_input, str):
        return ""
    text = _canonical_spacing(raw_input, keep_lines=step.shape == SHAPE_ITEMS)
    if not text:
        return ""
    text = text[0].upper() + text[1:]

    if step.step == StepId.ESSENTIAL_QUESTION and not text.endswith("?") and _has_question_stem(text):
        text = text.rstrip(".!;:, ") + "?"
    return text


# ---------------------------------------------------------------------------
# Step rules
# ---------------------------------------------------------------------------

def _rules_big_idea(text: str, context: dict) -> list[ValidationIssue]:
    issues = []
    count = len(_words(text))
    if count < MIN_BIG_IDEA_WORDS:
        issues.append(ValidationIssue(
            ISSUE_STRUCTURE, SEVERITY_ERROR,
            f"A Big Idea needs at least {MIN_BIG_IDEA_WORDS} words to express a concept (you wrote {count}).",
        ))
    elif count < 10 and not _matches_any(DEPTH_WORDS, text):
        issues.append(ValidationIssue(
            ISSUE_CONTENT, SEVERITY_WARNING,
            "This reads like a topic. Try framing it as a concept, e.g. 'How communities adapt to change'.",
        ))
    return issues


def _rules_essential_question(text: str, context: dict) -> list[ValidationIssue]:
    issues = []
    has_mark = "?" in text
    if not has_mark and not _has_question_stem(text):
        issues.append(ValidationIssue(
            ISSUE_STRUCTURE, SEVERITY_ERROR,
            "An Essential Question should be a question. Start with How, What, Why, "
            "In what ways, or To what extent, or end with '?'.",
        ))
        return issues
    if _matches_any(CLOSED_QUESTION_STARTS, text.strip()):
        issues.append(ValidationIssue(
            ISSUE_CONTENT, SEVERITY_WARNING,
            "This looks like a yes/no question. Open-ended questions (How..., Why...) sustain deeper inquiry.",
        ))
    issues.extend(_alignment_issue(text, context.get(StepId.BIG_IDEA.value, ""), "Big Idea"))
    return issues


def _rules_challenge(text: str, context: dict) -> list[ValidationIssue]:
    issues = []
    positions = _verb_positions(text, _ACTION_VERB_FORMS)
    if not positions:
        issues.append(ValidationIssue(
            ISSUE_STRUCTURE, SEVERITY_ERROR,
            "A Challenge should name what students will do. Lead with an action verb such as "
            "create, design, build, develop, or launch.",
        ))
    elif positions[0] != 0:
        issues.append(ValidationIssue(
            ISSUE_CLARITY, SEVERITY_INFO,
            "Consider leading with the action, e.g. 'Design a ...'.",
        ))
    if not _matches_any(AUDIENCE_PATTERNS, text):
        issues.append(ValidationIssue(
            ISSUE_CONTENT, SEVERITY_WARNING,
            "Who is this for? Naming a real audience or beneficiary raises the stakes.",
        ))
    if _matches_any(VAGUE_WORDS, text):
        issues.append(ValidationIssue(
            ISSUE_CLARITY, SEVERITY_WARNING,
            "Replace vague words like 'something' or 'stuff' with the concrete product.",
        ))
    issues.extend(_alignment_issue(text, context.get(StepId.ESSENTIAL_QUESTION.value, ""), "Essential Question"))
    return issues


def _rules_activities(text: str, context: dict) -> list[ValidationIssue]:
    issues = []
    items = parse_items(text)
    joined = " ".join(i["name"] + " " + " ".join(i["details"]) for i in items).lower()
    if not _verb_positions(joined, _ACTIVE_VERB_FORMS):
        issues.append(ValidationIssue(
            ISSUE_CONTENT, SEVERITY_WARNING,
            "Describe what students actively do, e.g. interview, prototype, analyze.",
        ))
    if len(items) < 3:
        issues.append(ValidationIssue(
            ISSUE_STRUCTURE, SEVERITY_INFO,
            f"You listed {len(items)} activit{'y' if len(items) == 1 else 'ies'}. "
            "Three or more gives each phase something to do.",
        ))
    return issues


def _rules_resources(text: str, context: dict) -> list[ValidationIssue]:
    return []


def _rules_impact(text: str, context: dict) -> list[ValidationIssue]:
    issues = []
    count = len(_words(text))
    if count < MIN_IMPACT_WORDS:
        issues.append(ValidationIssue(
            ISSUE_STRUCTURE, SEVERITY_ERROR,
            f"Describe the impact plan in at least {MIN_IMPACT_WORDS} words: who it reaches and how.",
        ))
        return issues
    if not _matches_any(AUDIENCE_PATTERNS, text):
        issues.append(ValidationIssue(
            ISSUE_CONTENT, SEVERITY_WARNING,
            "Name the audience who will see or use the work.",
        ))
    issues.extend(_alignment_issue(text, context.get(StepId.CHALLENGE.value, ""), "Challenge"))
    return issues


def _rules_item_set(text: str, context: dict) -> list[ValidationIssue]:
    return item_set_issues(parse_items(text))


def item_set_issues(items: list[dict]) -> list[ValidationIssue]:
    """Shape checks for a compound step's item set.

    Args:
        items: Canonical item dicts.

    Returns:
        List of issues; empty names are errors, duplicates and generic
        names are coaching only.
    """
    issues = []
    names = [str(item.get("name", "")).strip() for item in items]
    if any(not name for name in names):
        issues.append(ValidationIssue(ISSUE_STRUCTURE, SEVERITY_ERROR, "Every item needs a name."))
    lowered = [n.lower() for n in names if n]
    if len(set(lowered)) != len(lowered):
        issues.append(ValidationIssue(ISSUE_CLARITY, SEVERITY_WARNING, "Some items share the same name."))
    generic = [n for n in names if GENERIC_ITEM_NAME.match(n)]
    if generic:
        issues.append(ValidationIssue(
            ISSUE_CLARITY, SEVERITY_INFO,
            f"Generic names like '{generic[0]}' are hard to follow. Give each a descriptive name.",
        ))
    return issues


_RULES = {
    StepId.BIG_IDEA: _rules_big_idea,
    StepId.ESSENTIAL_QUESTION: _rules_essential_question,
    StepId.CHALLENGE: _rules_challenge,
    StepId.PHASES: _rules_item_set,
    StepId.ACTIVITIES: _rules_activities,
    StepId.RESOURCES: _rules_resources,
    StepId.MILESTONES: _rules_item_set,
    StepId.ARTIFACTS: _rules_item_set,
    StepId.CRITERIA: _rules_item_set,
    StepId.IMPACT: _rules_impact,
}


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def _outcome(step: StepDefinition, issues: list[ValidationIssue], text: str | None) -> ValidationOutcome:
    is_valid = not any(i.severity == SEVERITY_ERROR for i in issues)
    suggestions = STEP_SUGGESTIONS.get(step.step, []) if issues else []
    return ValidationOutcome(
        is_valid=is_valid,
        issues=issues,
        suggestions=list(suggestions),
        transformed_input=text,
    )


def validate(raw_input, stage_step_id: str, context: dict | None = None) -> ValidationOutcome:
    """Transform and validate an input for one step.

    Args:
        raw_input: The user's raw answer (any type; only text can pass).
        stage_step_id: The step identifier, e.g. 'foundation.essential_question'.
        context: Earlier captured answers as {step_id: text}, used by
            alignment checks.

    Returns:
        ValidationOutcome. ``transformed_input`` holds the canonical text
        that should be captured when the outcome is valid.

    Raises:
        ValueError: If ``stage_step_id`` does not name a known step.
    """
    step = find_step(stage_step_id)[2]
    if isinstance(raw_input, (list, tuple)) and step.shape == SHAPE_ITEMS:
        raw_input = "\n".join(str(v) for v in raw_input)
    if not isinstance(raw_input, str):
        return _outcome(step, [ValidationIssue(
            ISSUE_STRUCTURE, SEVERITY_ERROR, f"Please enter your {step.label} as text.",
        )], None)

    text = transform(raw_input, stage_step_id)
    if not text:
        return _outcome(step, [ValidationIssue(
            ISSUE_STRUCTURE, SEVERITY_ERROR, f"Please enter your {step.label}.",
        )], None)

    issues = _RULES[step.step](text, context or {})
    return _outcome(step, issues, text)


def validate_items(items: list[dict], stage_step_id: str) -> ValidationOutcome:
    """Validate an accepted item set for a compound step."""
    step = find_step(stage_step_id)[2]
    return _outcome(step, item_set_issues(items), None)
