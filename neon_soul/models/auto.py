"""Auto-configure a model from environment variables.

Provides a zero-config way to get a model for the CLI
(e.g. ``neon-soul synthesize``).
"""

from __future__ import annotations

import logging
import os
from typing import Optional

from neon_soul.protocols import ModelProtocol

logger = logging.getLogger(__name__)

# Default models: cheap and fast for a classification-heavy workload
_PROVIDER_DEFAULTS = {
    "anthropic": "claude-haiku-4-5-20251001",
    "openai": "gpt-4o-mini",
    "ollama": "llama3.2:latest",
}


def auto_configure_model() -> Optional[ModelProtocol]:
    """Auto-detect and create a model from environment variables.

    Detection priority (when ``NEON_SOUL_MODEL_PROVIDER`` is not set):
    1. ``CLAUDE_API_KEY`` or ``ANTHROPIC_API_KEY`` → Anthropic
    2. ``OPENAI_API_KEY`` → OpenAI
    3. ``OLLAMA_BASE_URL`` → Ollama
    4. Nothing → ``None`` (the pipeline runs degraded on defaults)

    Environment variables:
        NEON_SOUL_MODEL_PROVIDER: Force a provider (anthropic, openai, ollama, fixture).
        NEON_SOUL_MODEL: Override the default model name for the chosen provider.
        NEON_SOUL_FIXTURE_DIR / NEON_SOUL_FIXTURE_MODE: Recorded fixtures
            (``fixture`` provider, replay by default).
    """
    forced_provider = os.environ.get("NEON_SOUL_MODEL_PROVIDER", "").lower().strip()
    model_override = os.environ.get("NEON_SOUL_MODEL", "").strip() or None

    if forced_provider:
        provider = forced_provider
    elif os.environ.get("ANTHROPIC_API_KEY") or os.environ.get("CLAUDE_API_KEY"):
        provider = "anthropic"
    elif os.environ.get("OPENAI_API_KEY"):
        provider = "openai"
    elif os.environ.get("OLLAMA_BASE_URL"):
        provider = "ollama"
    else:
        return None

    model_id = model_override or _PROVIDER_DEFAULTS.get(provider)

    if provider == "anthropic":
        from neon_soul.models.anthropic import AnthropicModel

        model = AnthropicModel(model_id=model_id)
        logger.info("Auto-configured AnthropicModel (model=%s)", model_id)
        return model

    if provider == "openai":
        from neon_soul.models.openai import OpenAIModel

        model = OpenAIModel(model_id=model_id)
        logger.info("Auto-configured OpenAIModel (model=%s)", model_id)
        return model

    if provider == "ollama":
        from neon_soul.models.ollama import OllamaModel

        model = OllamaModel(model_id=model_id)
        logger.info("Auto-configured OllamaModel (model=%s)", model_id)
        return model

    if provider == "fixture":
        from neon_soul.models.fixture import FixtureModel

        fixture_dir = os.environ.get("NEON_SOUL_FIXTURE_DIR", "tests/fixtures/recorded")
        model = FixtureModel(fixture_dir, mode="replay", model_name=model_override)
        logger.info("Auto-configured FixtureModel (dir=%s)", fixture_dir)
        return model

    logger.warning("Unknown model provider '%s', skipping auto-configuration", provider)
    return None
