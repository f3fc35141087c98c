"""
Corrective Action Tracker
Tests: Similarity Detector and Proposal Suggester.

Both assistants run against a scripted provider so the responses can be
shaped per test: fenced JSON, malformed entries, unknown ids, and so on.
"""

import json
from datetime import date
from unittest.mock import MagicMock

import pytest

from capa.ai.assistants import ProposalSuggester, SimilarityDetector
from capa.ai.gateway import LLMGateway, LLMProvider
from capa.core.exceptions import ConfigurationError, SimilarityError
from capa.models.action import ActionStatus, AnalysisData, CorrectiveAction, ImplementationStatus


class _ScriptedProvider(LLMProvider):
    requires_credential = False

    def __init__(self, content=None, error=None):
        self.content = content
        self.error = error
        self.prompts = []

    def chat(self, messages, model, **kwargs):
        self.prompts.append(messages[-1]["content"])
        if self.error:
            raise self.error
        return {"content": self.content, "prompt_tokens": 1, "completion_tokens": 1, "model": model}


def _gateway(content=None, error=None):
    provider = _ScriptedProvider(content, error)
    return LLMGateway(provider="scripted", provider_instance=provider), provider


def _action(action_id, status=ActionStatus.PENDING_ANALYSIS, **overrides):
    data = dict(id=action_id, title=f"Fall {action_id}", status=status, type="incident",
                department="Internal Medicine", centre="Hospital Central")
    data.update(overrides)
    return CorrectiveAction(**data)


def _reply(*entries):
    return json.dumps({"similarActions": [
        {"actionId": a, "similarity": s, "reasons": [f"reason {a}"]} for a, s in entries
    ]})


CANDIDATE = _action("CA-0010")
POOL = [
    _action("CA-0001", ActionStatus.CLOSED),
    _action("CA-0002"),
    _action("CA-0003", ActionStatus.DRAFT),
    CANDIDATE,
]


# ═════════════════════════════════════════════════════════════════════════════
# SIMILARITY DETECTOR
# ═════════════════════════════════════════════════════════════════════════════

class TestSimilarityDetector:

    def test_ranked_matches(self):
        gw, _ = _gateway(_reply(("CA-0002", 55), ("CA-0001", 92)))
        matches = SimilarityDetector(gw).find_similar(CANDIDATE, POOL)
        assert [m.action.id for m in matches] == ["CA-0001", "CA-0002"]
        assert matches[0].is_high is True
        assert matches[1].is_high is False
        assert matches[0].to_dict() == {
            "action_id": "CA-0001", "title": "Fall CA-0001", "status": "closed",
            "similarity": 92, "reasons": ["reason CA-0001"], "is_high": True,
        }

    def test_pool_excludes_drafts_and_candidate(self):
        gw, provider = _gateway(_reply())
        SimilarityDetector(gw).find_similar(CANDIDATE, POOL)
        prompt = provider.prompts[0]
        existing = prompt.split("EXISTING ACTIONS:")[1]
        assert "CA-0001" in existing and "CA-0002" in existing
        assert "CA-0003" not in existing
        assert "CA-0010" not in existing

    def test_empty_pool_skips_call(self):
        gw, provider = _gateway(error=AssertionError("must not be called"))
        assert SimilarityDetector(gw).find_similar(CANDIDATE, [CANDIDATE, POOL[2]]) == []
        assert provider.prompts == []

    def test_fenced_json(self):
        gw, _ = _gateway("```json\n" + _reply(("CA-0002", 40)) + "\n```")
        [match] = SimilarityDetector(gw).find_similar(CANDIDATE, POOL)
        assert match.score == 40

    def test_unknown_ids_and_low_scores_dropped(self):
        gw, _ = _gateway(_reply(("CA-0099", 95), ("CA-0003", 90), ("CA-0002", 12)))
        assert SimilarityDetector(gw).find_similar(CANDIDATE, POOL) == []

    def test_scores_clamped(self):
        gw, _ = _gateway(_reply(("CA-0002", 140.4)))
        [match] = SimilarityDetector(gw).find_similar(CANDIDATE, POOL)
        assert match.score == 100

    def test_custom_threshold(self):
        gw, _ = _gateway(_reply(("CA-0002", 20)))
        [match] = SimilarityDetector(gw, min_score=10).find_similar(CANDIDATE, POOL)
        assert match.score == 20

    @pytest.mark.parametrize("content", [
        "not json at all",
        json.dumps({"matches": []}),
        json.dumps([]),
        json.dumps({"similarActions": [{"similarity": 50, "reasons": []}]}),
        json.dumps({"similarActions": [{"actionId": "CA-0002", "similarity": "high", "reasons": []}]}),
        json.dumps({"similarActions": [{"actionId": "CA-0002", "similarity": True, "reasons": []}]}),
        json.dumps({"similarActions": [{"actionId": "CA-0002", "similarity": 50, "reasons": "same"}]}),
    ])
    def test_malformed_response(self, content):
        gw, _ = _gateway(content)
        with pytest.raises(SimilarityError):
            SimilarityDetector(gw).find_similar(CANDIDATE, POOL)

    def test_call_failure(self):
        gw, provider = _gateway(error=ConnectionError("timeout"))
        with pytest.raises(SimilarityError):
            SimilarityDetector(gw).find_similar(CANDIDATE, POOL)
        assert len(provider.prompts) == 1

    def test_missing_credential(self):
        gw = LLMGateway(provider="gemini", api_key="")
        with pytest.raises(ConfigurationError):
            SimilarityDetector(gw).find_similar(CANDIDATE, POOL)

    def test_gateway_call_arguments(self):
        """The detector asks for a low-temperature call tagged with its purpose."""
        mock_gw = MagicMock()
        mock_gw.chat.return_value = {"content": _reply(("CA-0002", 85))}

        [match] = SimilarityDetector(mock_gw).find_similar(CANDIDATE, POOL)

        assert match.action.id == "CA-0002"
        mock_gw.require_configured.assert_called_once()
        _, kwargs = mock_gw.chat.call_args
        assert kwargs["purpose"] == "similarity"
        assert kwargs["temperature"] == 0.1
        messages = mock_gw.chat.call_args[0][0]
        assert messages[0]["role"] == "system"
        assert "40%" in messages[1]["content"]


# ═════════════════════════════════════════════════════════════════════════════
# PROPOSAL SUGGESTER
# ═════════════════════════════════════════════════════════════════════════════

class TestProposalSuggester:

    def _action(self, **overrides):
        return _action("CA-0010", implementation_responsible="u-impl",
                       analysis_data=AnalysisData(root_causes="Bed rails not raised"), **overrides)

    def test_json_reply(self):
        gw, _ = _gateway(json.dumps({"proposedActions": [
            {"description": "Raise bed rails", "assignedTo": "Nursing", "dueDate": "2026-12-01"},
            {"description": "Audit night rounds", "dueInDays": 10, "status": "in-progress"},
        ]}))
        items = ProposalSuggester(gw).suggest(self._action())
        assert [i.description for i in items] == ["Raise bed rails", "Audit night rounds"]
        assert items[0].assigned_to == "Nursing"
        assert items[0].due_date == date(2026, 12, 1)
        assert items[1].assigned_to == "u-impl"
        assert items[1].implementation_status == ImplementationStatus.IN_PROGRESS

    def test_free_text_reply(self):
        gw, _ = _gateway("- Raise bed rails for high-risk patients\n- Shorten night round interval")
        items = ProposalSuggester(gw).suggest(self._action())
        assert len(items) == 2
        assert all(i.assigned_to == "u-impl" for i in items)

    def test_root_causes_in_prompt(self):
        gw, provider = _gateway("[]")
        assert ProposalSuggester(gw).suggest(self._action()) == []
        assert "Bed rails not raised" in provider.prompts[0]

    def test_explicit_root_causes_win(self):
        gw, provider = _gateway("[]")
        ProposalSuggester(gw).suggest(self._action(), root_causes="Slippery floor")
        assert "Slippery floor" in provider.prompts[0]

    def test_call_failure(self):
        gw, provider = _gateway(error=ConnectionError("timeout"))
        with pytest.raises(SimilarityError):
            ProposalSuggester(gw).suggest(self._action())
        assert len(provider.prompts) == 1

    def test_missing_credential(self):
        with pytest.raises(ConfigurationError):
            ProposalSuggester(LLMGateway(provider="gemini", api_key="")).suggest(self._action())
