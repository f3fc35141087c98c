"""
Corrective Action Tracker
Suggestion text parser.

Turns a free-text AI suggestion into draft proposed-action items. Pure and
best-effort. Fallback order:

    1. numbered list        ("1. ...")      (needs more than one match)
    2. bullet lists         ("•", "-", "*") (first style with more than one match)
    3. keyword sentences    (action verbs, sentences longer than 20 chars)
    4. whole text           (one item, truncated to 500 chars)

Each item then picks up an assignee ("Responsible: ...") and a relative
due date ("within 2 weeks") when the text mentions them.
"""

from __future__ import annotations

import re
import uuid
from datetime import date, timedelta

from capa.models.action import ProposedActionItem
from capa.utils.helpers import parse_date

DEFAULT_ASSIGNEE = "To be assigned"
DUE_DATE_STEP_DAYS = 15
MAX_WHOLE_TEXT = 500

_LIST_PATTERNS = [
    (re.compile(r"(?:^|\n)\s*(\d+)\.\s*([^\n]+(?:\n(?!\s*\d+\.)[^\n]*)*)"), 2),
    (re.compile(r"(?:^|\n)\s*•\s*([^\n]+(?:\n(?!\s*•)[^\n]*)*)"), 1),
    (re.compile(r"(?:^|\n)\s*-\s*([^\n]+(?:\n(?!\s*-)[^\n]*)*)"), 1),
    (re.compile(r"(?:^|\n)\s*\*\s*([^\n]+(?:\n(?!\s*\*)[^\n]*)*)"), 1),
]

ACTION_KEYWORDS = (
    # English
    "meet", "train", "review", "analyse", "analyze", "implement", "document",
    "establish", "define", "draft", "monitor", "evaluate", "follow up", "follow-up",
    # Catalan
    "reunir", "formar", "revisar", "analitzar", "implementar", "documentar",
    "establir", "definir", "redactar", "monitoritzar", "avaluar", "seguiment",
)

_RESPONSIBLE_PATTERNS = [
    re.compile(r"responsible[:\s]+([^.\n,]+)", re.I),
    re.compile(r"assigned(?:\s+to)?[:\s]+([^.\n,]+)", re.I),
    re.compile(r"owner[:\s]+([^.\n,]+)", re.I),
    re.compile(r"responsable[:\s]+([^.\n,]+)", re.I),
    re.compile(r"assignat[:\s]+([^.\n,]+)", re.I),
    re.compile(r"encarregat[:\s]+([^.\n,]+)", re.I),
    re.compile(r"departa?ment[:\s]+([^.\n,]+)", re.I),
]

_DURATION_PATTERNS = [
    (re.compile(r"(\d{1,2})\s*(?:days?|dies|dia)\b", re.I), 1),
    (re.compile(r"(\d{1,2})\s*(?:weeks?|setmanes|setmana)\b", re.I), 7),
    (re.compile(r"(\d{1,2})\s*(?:months?|mesos|mes)\b", re.I), 30),
]

_AUTO_NUMBERED = re.compile(r"(?:^|\n)\s*\d+\.\s*")
_AUTO_BULLET = re.compile(r"(?:^|\n)\s*[•\-*]\s*")


def _extract_assignee(text: str) -> str | None:
    for pattern in _RESPONSIBLE_PATTERNS:
        match = pattern.search(text)
        if match and match.group(1).strip():
            return match.group(1).strip()
    return None


def _extract_due_date(text: str, today: date) -> date | None:
    for pattern, multiplier in _DURATION_PATTERNS:
        match = pattern.search(text)
        if match:
            return today + timedelta(days=int(match.group(1)) * multiplier)
    return None


def _split_list(text: str) -> list[str]:
    for pattern, group in _LIST_PATTERNS:
        matches = list(pattern.finditer(text))
        if len(matches) > 1:
            return [m.group(group).strip() for m in matches]
    return []


def _split_keyword_sentences(text: str) -> list[str]:
    sentences = [s.strip() for s in re.split(r"[.!?]+", text) if len(s.strip()) > 20]
    return [s for s in sentences if any(k in s.lower() for k in ACTION_KEYWORDS)]


def split_suggestion(text: str) -> list[str]:
    """Raw item texts using the documented fallback order."""
    clean = (text or "").strip()
    if not clean:
        return []
    parts = _split_list(clean) or _split_keyword_sentences(clean)
    if parts:
        return parts
    if len(clean) > MAX_WHOLE_TEXT:
        return [clean[:MAX_WHOLE_TEXT] + "..."]
    return [clean]


def parse_suggestion_items(text: str, base_assignee: str = "", base_due_date=None,
                           today: date | None = None) -> list[ProposedActionItem]:
    """
    Parse a free-text suggestion into draft proposed-action items.

    Items without an explicit due date are spread out from *base_due_date*
    (or today) in 15-day steps.
    """
    today = today or date.today()
    base = parse_date(base_due_date) or today
    items = []
    for index, part in enumerate(split_suggestion(text)):
        items.append(ProposedActionItem(
            id=f"ai-{uuid.uuid4().hex[:8]}",
            description=part,
            assigned_to=_extract_assignee(part) or base_assignee or DEFAULT_ASSIGNEE,
            due_date=_extract_due_date(part, today) or base + timedelta(days=(index + 1) * DUE_DATE_STEP_DAYS),
        ))
    return items


def should_auto_parse(text: str) -> bool:
    """True when the response looks like it holds several actions."""
    text = text or ""
    return (
        len(_AUTO_NUMBERED.findall(text)) > 1
        or len(_AUTO_BULLET.findall(text)) > 2
        or len(text) > 800
    )
