"""
Corrective Action Tracker
AI module.

Submodules:
    - gateway: LLM Gateway (provider selection, retry, credential check)
    - response_parser: free-text suggestion → proposed-action items
    - assistants: similarity detector, proposal suggester
"""
