"""Tests for auto_configure_model(): env-var based model detection.

All tests work without actual API access; model constructors are mocked.
"""

from __future__ import annotations

from unittest.mock import MagicMock, patch

from neon_soul.models.fixture import FixtureModel


def _clear_env(monkeypatch):
    """Clear all model-related env vars."""
    for var in (
        "ANTHROPIC_API_KEY",
        "CLAUDE_API_KEY",
        "OPENAI_API_KEY",
        "OLLAMA_BASE_URL",
        "NEON_SOUL_MODEL_PROVIDER",
        "NEON_SOUL_MODEL",
        "NEON_SOUL_FIXTURE_DIR",
    ):
        monkeypatch.delenv(var, raising=False)


class TestAutoConfigureModel:
    """Tests for neon_soul.models.auto.auto_configure_model()."""

    def test_no_keys_returns_none(self, monkeypatch):
        _clear_env(monkeypatch)
        from neon_soul.models.auto import auto_configure_model

        assert auto_configure_model() is None

    def test_anthropic_api_key_detected(self, monkeypatch):
        _clear_env(monkeypatch)
        monkeypatch.setenv("ANTHROPIC_API_KEY", "sk-ant-test")

        mock_model = MagicMock()
        with patch("neon_soul.models.anthropic.AnthropicModel", return_value=mock_model) as mock_cls:
            from neon_soul.models.auto import auto_configure_model

            result = auto_configure_model()

        assert result is mock_model
        mock_cls.assert_called_once_with(model_id="claude-haiku-4-5-20251001")

    def test_claude_api_key_detected(self, monkeypatch):
        _clear_env(monkeypatch)
        monkeypatch.setenv("CLAUDE_API_KEY", "sk-ant-claude")

        with patch("neon_soul.models.anthropic.AnthropicModel") as mock_cls:
            from neon_soul.models.auto import auto_configure_model

            auto_configure_model()

        mock_cls.assert_called_once_with(model_id="claude-haiku-4-5-20251001")

    def test_openai_api_key_detected(self, monkeypatch):
        _clear_env(monkeypatch)
        monkeypatch.setenv("OPENAI_API_KEY", "sk-openai-test")

        with patch("neon_soul.models.openai.OpenAIModel") as mock_cls:
            from neon_soul.models.auto import auto_configure_model

            auto_configure_model()

        mock_cls.assert_called_once_with(model_id="gpt-4o-mini")

    def test_anthropic_wins_over_openai(self, monkeypatch):
        _clear_env(monkeypatch)
        monkeypatch.setenv("ANTHROPIC_API_KEY", "a")
        monkeypatch.setenv("OPENAI_API_KEY", "o")

        with patch("neon_soul.models.anthropic.AnthropicModel") as anthropic_cls, patch(
            "neon_soul.models.openai.OpenAIModel"
        ) as openai_cls:
            from neon_soul.models.auto import auto_configure_model

            auto_configure_model()

        anthropic_cls.assert_called_once()
        openai_cls.assert_not_called()

    def test_ollama_base_url_detected(self, monkeypatch):
        _clear_env(monkeypatch)
        monkeypatch.setenv("OLLAMA_BASE_URL", "http://localhost:11434")

        with patch("neon_soul.models.ollama.OllamaModel") as mock_cls:
            from neon_soul.models.auto import auto_configure_model

            auto_configure_model()

        mock_cls.assert_called_once_with(model_id="llama3.2:latest")

    def test_forced_provider_with_model_override(self, monkeypatch):
        _clear_env(monkeypatch)
        monkeypatch.setenv("ANTHROPIC_API_KEY", "a")
        monkeypatch.setenv("NEON_SOUL_MODEL_PROVIDER", "OpenAI")
        monkeypatch.setenv("NEON_SOUL_MODEL", "gpt-4.1")

        with patch("neon_soul.models.openai.OpenAIModel") as mock_cls:
            from neon_soul.models.auto import auto_configure_model

            auto_configure_model()

        mock_cls.assert_called_once_with(model_id="gpt-4.1")

    def test_fixture_provider(self, monkeypatch, tmp_path):
        _clear_env(monkeypatch)
        monkeypatch.setenv("NEON_SOUL_MODEL_PROVIDER", "fixture")
        monkeypatch.setenv("NEON_SOUL_FIXTURE_DIR", str(tmp_path))
        from neon_soul.models.auto import auto_configure_model

        model = auto_configure_model()

        assert isinstance(model, FixtureModel)
        assert model.mode == "replay"

    def test_unknown_provider_returns_none(self, monkeypatch, caplog):
        _clear_env(monkeypatch)
        monkeypatch.setenv("NEON_SOUL_MODEL_PROVIDER", "mystery")
        from neon_soul.models.auto import auto_configure_model

        assert auto_configure_model() is None
        assert "Unknown model provider" in caplog.text
