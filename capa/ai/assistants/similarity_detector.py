"""
Corrective Action Tracker
Similarity Detector.

Ranks existing corrective actions by similarity to a candidate action:
    1. Build the pool (non-draft actions, candidate excluded)
    2. Build a scoring prompt with weighted criteria
    3. Call LLM → {"similarActions": [{"actionId", "similarity", "reasons"}]}
    4. Validate the shape, map ids back onto the pool, sort by score

An empty pool short-circuits before any LLM call. A malformed response is a
SimilarityError; the caller decides what it means for the workflow.
"""

import json
import logging
import re
from dataclasses import dataclass, field

from capa.core.exceptions import SimilarityError
from capa.models.action import ActionStatus, CorrectiveAction

logger = logging.getLogger(__name__)


# ── Thresholds ────────────────────────────────────────────────────────────────

MIN_SIMILARITY = 30     # model is asked to drop anything below this
HIGH_SIMILARITY = 80    # at or above → probable duplicate

SYSTEM_PROMPT = (
    "You are a healthcare quality management expert. You compare corrective "
    "actions and detect duplicates or closely related problems. "
    "Respond with JSON only."
)


@dataclass
class SimilarMatch:
    action: CorrectiveAction
    score: int
    reasons: list = field(default_factory=list)

    @property
    def is_high(self) -> bool:
        return self.score >= HIGH_SIMILARITY

    def to_dict(self):
        return {
            "action_id": self.action.id,
            "title": self.action.title,
            "status": self.action.status.value,
            "similarity": self.score,
            "reasons": list(self.reasons),
            "is_high": self.is_high,
        }


class SimilarityDetector:
    """LLM-backed similarity ranking over the existing action pool."""

    def __init__(self, gateway, *, min_score: int = MIN_SIMILARITY):
        self.gateway = gateway
        self.min_score = min_score

    def find_similar(self, candidate: CorrectiveAction, pool: list[CorrectiveAction],
                     exclude_id: str | None = None) -> list[SimilarMatch]:
        """
        Rank *pool* against *candidate*.

        Returns:
            SimilarMatch list, highest score first. Empty when the pool is empty.

        Raises:
            ConfigurationError: LLM provider not configured.
            SimilarityError: response is not the expected JSON shape.
        """
        exclude_id = exclude_id or candidate.id
        pool = [a for a in pool if a.status != ActionStatus.DRAFT and a.id != exclude_id]
        if not pool:
            logger.info("Similarity check skipped: empty pool", extra={"action_id": candidate.id})
            return []

        self.gateway.require_configured()
        messages = [
            {"role": "system", "content": SYSTEM_PROMPT},
            {"role": "user", "content": self._build_prompt(candidate, pool)},
        ]
        try:
            response = self.gateway.chat(messages, purpose="similarity", temperature=0.1)
        except RuntimeError as e:
            raise SimilarityError(str(e)) from e

        raw_matches = self._parse_response(response["content"])
        by_id = {a.id: a for a in pool}
        matches = []
        for item in raw_matches:
            action = by_id.get(str(item["actionId"]))
            if action is None:
                logger.debug("Dropping unknown id from similarity response: %s", item["actionId"])
                continue
            score = max(0, min(100, int(round(item["similarity"]))))
            if score < self.min_score:
                continue
            matches.append(SimilarMatch(action=action, score=score, reasons=[str(r) for r in item["reasons"]]))

        matches.sort(key=lambda m: m.score, reverse=True)
        logger.info("Similarity check found %d match(es)", len(matches),
                    extra={"action_id": candidate.id})
        return matches

    # ── Prompt ────────────────────────────────────────────────────────────

    @staticmethod
    def _describe(action: CorrectiveAction) -> dict:
        return {
            "id": action.id,
            "title": action.title,
            "description": action.description,
            "type": action.type,
            "category": action.category,
            "centre": action.centre,
            "department": action.department,
        }

    def _build_prompt(self, candidate: CorrectiveAction, pool: list[CorrectiveAction]) -> str:
        return (
            "Compare the NEW corrective action with the EXISTING ones and score how similar "
            "each one is, from 0 to 100.\n\n"
            "Weighting:\n"
            "- 40%: same underlying problem (description)\n"
            "- 25%: same type and category\n"
            "- 20%: same centre and department\n"
            "- 15%: similar title\n\n"
            f"Only include actions with a score of {self.min_score} or more.\n\n"
            f"NEW ACTION:\n{json.dumps(self._describe(candidate), ensure_ascii=False, indent=2)}\n\n"
            f"EXISTING ACTIONS:\n{json.dumps([self._describe(a) for a in pool], ensure_ascii=False, indent=2)}\n\n"
            "Respond with exactly this JSON shape:\n"
            '{"similarActions": [{"actionId": "<id>", "similarity": <0-100>, '
            '"reasons": ["<short reason>", "..."]}]}'
        )

    # ── Response Parsing ──────────────────────────────────────────────────

    @staticmethod
    def _parse_response(content: str) -> list[dict]:
        """Parse and validate the LLM JSON response."""
        cleaned = (content or "").strip()
        if cleaned.startswith("```"):
            cleaned = re.sub(r'^```\w*\n?', '', cleaned)
            cleaned = re.sub(r'\n?```$', '', cleaned)

        try:
            data = json.loads(cleaned)
        except json.JSONDecodeError as e:
            raise SimilarityError(f"Similarity response is not valid JSON: {e}") from e

        if not isinstance(data, dict) or not isinstance(data.get("similarActions"), list):
            raise SimilarityError("Similarity response has no 'similarActions' list")

        for item in data["similarActions"]:
            if (
                not isinstance(item, dict)
                or "actionId" not in item
                or isinstance(item.get("similarity"), bool)
                or not isinstance(item.get("similarity"), (int, float))
                or not isinstance(item.get("reasons"), list)
            ):
                raise SimilarityError(f"Malformed similarity entry: {item!r}")
        return data["similarActions"]
