"""
Corrective Action Tracker
AI Assistants package.

Assistants:
    - similarity_detector: ranks existing actions against a candidate
    - proposal_suggester: drafts proposed actions for the analysis stage
"""

from capa.ai.assistants.proposal_suggester import ProposalSuggester
from capa.ai.assistants.similarity_detector import SimilarityDetector, SimilarMatch
