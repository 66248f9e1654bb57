"""
Backend Adapters
================

Remote gateways and local engines the routing engine dispatches to.

All remote gateways implement:
- generate(prompt, model_tier, max_tokens, temperature)
- model_for(model_tier)

All local engines implement:
- generate(prompt, model_id, max_tokens, temperature)
- ping(), plus optional installed_models() / pull_model()
"""

from .base import LocalInferenceEngine, RemoteModelGateway
from .claude import ClaudeGateway
from .fake import FakeLocalEngine, FakeRemoteGateway, RecordingSink
from .gemini import GeminiGateway
from .ollama import OllamaEngine

__all__ = [
    "RemoteModelGateway",
    "LocalInferenceEngine",
    "ClaudeGateway",
    "GeminiGateway",
    "OllamaEngine",
    "FakeRemoteGateway",
    "FakeLocalEngine",
    "RecordingSink",
]
