"""neon_soul model implementations.

Concrete ModelProtocol providers: local (Ollama), remote (Anthropic,
OpenAI) and recorded fixtures for tests.
"""

from __future__ import annotations

from neon_soul.models.anthropic import AnthropicModel
from neon_soul.models.fixture import FixtureModel
from neon_soul.models.ollama import OllamaModel
from neon_soul.models.openai import OpenAIModel

__all__ = ["AnthropicModel", "FixtureModel", "OllamaModel", "OpenAIModel"]
