"""
Corrective Action Tracker
Proposal Suggester.

Asks the LLM for corrective proposals for an action and returns them as
draft ProposedActionItems. The model is asked for JSON; if it answers in
prose instead, the free-text parser splits the reply.

Nothing is written to the action here: the caller reviews the drafts and
submits them through the normal update path.
"""

import json
import logging
import re
import uuid
from datetime import date, timedelta

from capa.ai.response_parser import DEFAULT_ASSIGNEE, parse_suggestion_items
from capa.core.exceptions import SimilarityError
from capa.models.action import CorrectiveAction, ImplementationStatus, ProposedActionItem
from capa.utils.helpers import parse_date

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = (
    "You are an expert in healthcare quality management and continuous improvement. "
    "You propose concrete, measurable corrective actions."
)


class ProposalSuggester:
    """Draft proposed actions for the analysis stage."""

    def __init__(self, gateway):
        self.gateway = gateway

    def suggest(self, action: CorrectiveAction, root_causes: str | None = None) -> list[ProposedActionItem]:
        """
        Returns:
            Draft ProposedActionItems (possibly empty).

        Raises:
            ConfigurationError: LLM provider not configured.
            SimilarityError: the LLM call itself failed.
        """
        self.gateway.require_configured()
        if root_causes is None and action.analysis_data:
            root_causes = action.analysis_data.root_causes

        messages = [
            {"role": "system", "content": SYSTEM_PROMPT},
            {"role": "user", "content": self._build_prompt(action, root_causes)},
        ]
        try:
            response = self.gateway.chat(messages, purpose="suggestion", temperature=0.4)
        except RuntimeError as e:
            raise SimilarityError(str(e)) from e

        content = response["content"]
        base_assignee = action.implementation_responsible or action.analysis_responsible or ""
        items = self._parse_json_items(content, base_assignee)
        if items is None:
            items = parse_suggestion_items(
                content,
                base_assignee=base_assignee,
                base_due_date=action.implementation_deadline,
            )
        logger.info("Suggested %d proposal(s)", len(items), extra={"action_id": action.id})
        return items

    @staticmethod
    def _build_prompt(action: CorrectiveAction, root_causes: str | None) -> str:
        lines = [
            "Propose corrective actions for the following quality incident.",
            "",
            f"Title: {action.title}",
            f"Description: {action.description}",
            f"Type: {action.type}",
            f"Category: {action.category}",
            f"Centre: {action.centre}",
            f"Department: {action.department}",
            f"Priority: {action.priority}",
        ]
        if root_causes:
            lines.append(f"Root causes identified: {root_causes}")
        lines += [
            "",
            "Answer with a JSON list. Each entry: "
            '{"description": "...", "assignedTo": "<role or team>", "dueInDays": <int>}.',
            "Prefer 3 to 5 specific, verifiable actions.",
        ]
        return "\n".join(lines)

    @staticmethod
    def _parse_json_items(content: str, base_assignee: str):
        """Structured reply → items; None when the reply is not the JSON list we asked for."""
        cleaned = (content or "").strip()
        if cleaned.startswith("```"):
            cleaned = re.sub(r'^```\w*\n?', '', cleaned)
            cleaned = re.sub(r'\n?```$', '', cleaned)
        try:
            data = json.loads(cleaned)
        except json.JSONDecodeError:
            return None
        if isinstance(data, dict):
            data = data.get("proposedActions") or data.get("proposed_actions")
        if not isinstance(data, list) or not all(isinstance(d, dict) and d.get("description") for d in data):
            return None

        items = []
        for index, entry in enumerate(data):
            due = parse_date(entry.get("dueDate") or entry.get("due_date"))
            if due is None and isinstance(entry.get("dueInDays"), int):
                due = date.today() + timedelta(days=entry["dueInDays"])
            if due is None:
                due = date.today() + timedelta(days=(index + 1) * 15)
            status = entry.get("status", ImplementationStatus.PENDING.value)
            if status not in {s.value for s in ImplementationStatus}:
                status = ImplementationStatus.PENDING.value
            items.append(ProposedActionItem(
                id=f"ai-{uuid.uuid4().hex[:8]}",
                description=str(entry["description"]).strip(),
                assigned_to=(entry.get("assignedTo") or entry.get("assigned_to") or base_assignee
                             or DEFAULT_ASSIGNEE),
                due_date=due,
                implementation_status=ImplementationStatus(status),
            ))
        return items
