"""FixtureModel: recorded ModelProtocol provider for tests.

Wraps another model and records its responses to JSON fixtures keyed by
a hash of the request, or replays previously recorded fixtures without
touching the network.

Modes:
- ``replay``: serve fixtures only; a missing fixture raises FixtureMissingError
- ``record``: serve fixtures when present, otherwise call the inner model and save
- ``passthrough``: always call the inner model, never read or write fixtures
"""

from __future__ import annotations

import hashlib
import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional, Union

from neon_soul.protocols import (
    FixtureMissingError,
    ModelCapabilities,
    ModelMessage,
    ModelProtocol,
    ModelResponse,
)
from neon_soul.types import utc_now

logger = logging.getLogger(__name__)

# Bump when prompts change so stale recordings stop matching
PROMPT_VERSION = "v1"

VALID_FIXTURE_MODES = frozenset({"replay", "record", "passthrough"})


@dataclass
class FixtureStats:
    hits: int = 0
    misses: int = 0
    recordings: int = 0
    errors: int = 0


class FixtureModel:
    """ModelProtocol that records and replays another model's responses."""

    def __init__(
        self,
        fixture_dir: Union[str, Path],
        *,
        mode: str = "replay",
        inner: Optional[ModelProtocol] = None,
        model_name: Optional[str] = None,
    ) -> None:
        if mode not in VALID_FIXTURE_MODES:
            raise ValueError(
                f"Invalid fixture mode {mode!r}; expected one of {sorted(VALID_FIXTURE_MODES)}"
            )
        if mode != "replay" and inner is None:
            raise ValueError(f"Fixture mode {mode!r} requires an inner model")

        self._fixture_dir = Path(fixture_dir)
        self._mode = mode
        self._inner = inner
        self._model_name = model_name or (inner.model_id if inner is not None else "unknown")
        self.stats = FixtureStats()

        if mode == "record":
            self._fixture_dir.mkdir(parents=True, exist_ok=True)
        logger.debug("FixtureModel in %s mode, fixtures: %s", mode, self._fixture_dir)

    @property
    def model_id(self) -> str:
        return f"fixture:{self._model_name}"

    @property
    def mode(self) -> str:
        return self._mode

    @property
    def capabilities(self) -> ModelCapabilities:
        if self._inner is not None:
            inner_caps = self._inner.capabilities
            return ModelCapabilities(
                model_id=self.model_id,
                provider="fixture",
                context_window=inner_caps.context_window,
                max_output_tokens=inner_caps.max_output_tokens,
            )
        return ModelCapabilities(model_id=self.model_id, provider="fixture", context_window=8192)

    def fixture_key(self, messages: list[ModelMessage], system: Optional[str]) -> str:
        """Stable 32-hex key for a request."""
        payload = json.dumps(
            {
                "messages": [{"role": m.role, "content": m.content} for m in messages],
                "system": system or "",
                "prompt_version": PROMPT_VERSION,
                "model": self._model_name,
            },
            sort_keys=True,
            ensure_ascii=False,
        )
        return hashlib.sha256(payload.encode("utf-8")).hexdigest()[:32]

    def fixture_path(self, key: str) -> Path:
        return self._fixture_dir / f"{key}.json"

    def generate(
        self,
        messages: list[ModelMessage],
        *,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
        system: Optional[str] = None,
    ) -> ModelResponse:
        if self._mode == "passthrough":
            return self._call_inner(messages, temperature, max_tokens, system)

        key = self.fixture_key(messages, system)
        path = self.fixture_path(key)
        recorded = self._load(path)
        if recorded is not None:
            self.stats.hits += 1
            logger.debug("Fixture hit: %s", key)
            return ModelResponse(
                content=recorded.get("content", ""),
                usage=recorded.get("usage") or {},
                stop_reason=recorded.get("stop_reason"),
                model_id=self.model_id,
            )

        self.stats.misses += 1
        if self._mode == "replay":
            raise FixtureMissingError(str(path), key)

        response = self._call_inner(messages, temperature, max_tokens, system)
        self._save(
            path,
            {
                "_metadata": {
                    "key": key,
                    "prompt_version": PROMPT_VERSION,
                    "recorded_at": utc_now(),
                    "model": self._model_name,
                },
                "messages": [{"role": m.role, "content": m.content} for m in messages],
                "system": system,
                "content": response.content,
                "usage": response.usage,
                "stop_reason": response.stop_reason,
            },
        )
        return response

    # ---- Internal helpers ----

    def _call_inner(
        self,
        messages: list[ModelMessage],
        temperature: Optional[float],
        max_tokens: Optional[int],
        system: Optional[str],
    ) -> ModelResponse:
        assert self._inner is not None
        return self._inner.generate(
            messages, temperature=temperature, max_tokens=max_tokens, system=system
        )

    def _load(self, path: Path) -> Optional[dict[str, Any]]:
        if not path.exists():
            return None
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            logger.warning("Failed to load fixture %s: %s", path, e)
            self.stats.errors += 1
            return None
        if not isinstance(data, dict):
            logger.warning("Fixture %s is not a JSON object", path)
            self.stats.errors += 1
            return None
        return data

    def _save(self, path: Path, fixture: dict[str, Any]) -> None:
        try:
            path.write_text(json.dumps(fixture, indent=2, ensure_ascii=False), encoding="utf-8")
        except OSError as e:
            logger.error("Failed to save fixture %s: %s", path, e)
            self.stats.errors += 1
            return
        self.stats.recordings += 1
        logger.debug("Recorded fixture: %s", path)
