from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
import re
from typing import Final, Literal

from featurecrew.models import ReviewResult, TaskReview


APPROVE_MARKER: Final[str] = "✅ APPROVE"
REJECT_MARKER: Final[str] = "❌ REJECT"
REWORK_MARKER: Final[str] = "**REWORK_REQUIRED**"
MAX_ACTION_ITEMS: Final[int] = 5
RECENT_REJECTION_LIMIT: Final[int] = 3
MIN_ITEM_CHARS: Final[int] = 10
MAX_ITEM_CHARS: Final[int] = 200
NO_ACTION_ITEMS_MESSAGE: Final[str] = (
    "No specific action items could be extracted from the previous reviews. "
    "Re-read the reviewer comments on the pull request and address every concern raised."
)

_REWORK_PHRASES: Final[tuple[str, ...]] = ("must fix", "critical issues", "action items")
_ACTION_PATTERNS: Final[tuple[re.Pattern[str], ...]] = (
    re.compile(
        r"\b(?:must|needs? to|should)\s+(?:fix|add|remove|implement|update|handle)\b[^.\n]*",
        re.IGNORECASE,
    ),
    re.compile(r"\b(?:missing|lacks|requires)\b[^.\n]*", re.IGNORECASE),
    re.compile(r"\b(?:error|issue|problem):[^.\n]*", re.IGNORECASE),
)
_APPROVE_KEYWORD: Final[re.Pattern[str]] = re.compile(r"\bapprove[sd]?\b|✅", re.IGNORECASE)
_REJECT_KEYWORD: Final[re.Pattern[str]] = re.compile(r"\breject(?:s|ed)?\b|❌", re.IGNORECASE)


@dataclass(frozen=True)
class ParsedVerdict:
    result: ReviewResult
    source: Literal["marker", "keyword"]


@dataclass(frozen=True)
class AmbiguousVerdict:
    reason: str

    @property
    def result(self) -> ReviewResult:
        return "REJECT"


ReviewVerdict = ParsedVerdict | AmbiguousVerdict


@dataclass(frozen=True)
class ActionItem:
    text: str
    reviewer_id: str
    critical: bool


def parse_review_verdict(output: str) -> ReviewVerdict:
    """Read an APPROVE/REJECT decision out of free-form reviewer output.

    Explicit markers win over keywords. Conflicting or missing signals are
    ``AmbiguousVerdict``, which always resolves to REJECT.
    """
    has_approve_marker = APPROVE_MARKER in output
    has_reject_marker = REJECT_MARKER in output
    if has_approve_marker and has_reject_marker:
        return AmbiguousVerdict(reason="conflicting_markers")
    if has_approve_marker:
        return ParsedVerdict(result="APPROVE", source="marker")
    if has_reject_marker:
        return ParsedVerdict(result="REJECT", source="marker")

    approves = _APPROVE_KEYWORD.search(output) is not None
    rejects = _REJECT_KEYWORD.search(output) is not None
    if approves and rejects:
        return AmbiguousVerdict(reason="conflicting_keywords")
    if approves:
        return ParsedVerdict(result="APPROVE", source="keyword")
    if rejects:
        return ParsedVerdict(result="REJECT", source="keyword")
    return AmbiguousVerdict(reason="no_verdict")


def has_rework_required(text: str) -> bool:
    if REWORK_MARKER in text or REJECT_MARKER in text:
        return True
    lowered = text.lower()
    return any(phrase in lowered for phrase in _REWORK_PHRASES)


def extract_action_items(review: TaskReview) -> list[ActionItem]:
    reviewer_id = review.reviewer_id or "unknown"
    critical = has_rework_required(review.comments)
    items: list[ActionItem] = []
    for pattern in _ACTION_PATTERNS:
        for match in pattern.finditer(review.comments):
            text = match.group(0).strip().rstrip(".,;:")
            if MIN_ITEM_CHARS <= len(text) <= MAX_ITEM_CHARS:
                items.append(ActionItem(text=text, reviewer_id=reviewer_id, critical=critical))
    return items


def select_rejections(history: Sequence[TaskReview], attempt_number: int) -> list[TaskReview]:
    rejections = [review for review in history if review.result == "REJECT"]
    if attempt_number > 1 and len(rejections) > RECENT_REJECTION_LIMIT:
        rejections = sorted(rejections, key=lambda review: review.timestamp, reverse=True)
        rejections = rejections[:RECENT_REJECTION_LIMIT]
    return rejections


def collect_action_items(history: Sequence[TaskReview], attempt_number: int) -> list[ActionItem]:
    seen: set[str] = set()
    unique: list[ActionItem] = []
    for review in select_rejections(history, attempt_number):
        for item in extract_action_items(review):
            key = _normalize(item.text)
            if key in seen:
                continue
            seen.add(key)
            unique.append(item)
    # sorted() is stable, so discovery order holds within each group.
    ranked = sorted(unique, key=lambda item: not item.critical)
    return ranked[:MAX_ACTION_ITEMS]


def synthesize_feedback(history: Sequence[TaskReview], attempt_number: int) -> str:
    items = collect_action_items(history, attempt_number)
    if not items:
        return NO_ACTION_ITEMS_MESSAGE

    critical = [item for item in items if item.critical]
    normal = [item for item in items if not item.critical]
    lines = [f"## Feedback from previous reviews (attempt {attempt_number})", ""]
    if critical:
        lines.append("### Critical issues (must fix)")
        lines.extend(f"- {item.text} (reviewer: {item.reviewer_id})" for item in critical)
        lines.append("")
    if normal:
        lines.append("### Other requested changes")
        lines.extend(f"- {item.text} (reviewer: {item.reviewer_id})" for item in normal)
        lines.append("")
    lines.append(
        "Fix every critical issue first, then address the remaining items before "
        "resubmitting for review."
    )
    return "\n".join(lines)


def _normalize(text: str) -> str:
    return " ".join(text.lower().split())
