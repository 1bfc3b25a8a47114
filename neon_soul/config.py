"""Synthesis configuration.

Resolution order (later wins):
1. ``SynthesisConfig`` defaults
2. ``<workspace>/.neon-soul/config.json`` (validated with jsonschema)
3. ``NEON_SOUL_*`` environment variables
4. Explicit overrides (CLI options)

Invalid values raise ConfigurationError before any extraction starts.
Nothing is clamped.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import asdict, dataclass, fields
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Union

from jsonschema import Draft7Validator

from neon_soul.protocols import ConfigurationError

logger = logging.getLogger(__name__)

STATE_DIR_NAME = ".neon-soul"
CONFIG_FILE_NAME = "config.json"

VALID_SIMILARITY_STRATEGIES = ("llm", "embedding", "lexical")


@dataclass
class SynthesisConfig:
    """Tunable parameters for one synthesis run."""

    # Extraction
    concurrency: int = 10  # Parallel classification calls per batch
    detection_confidence: float = 0.5  # Min confidence for an identity "yes"
    generalize: bool = False  # Produce actor-agnostic paraphrases
    max_retries: int = 2  # Per capability call, after the first attempt

    # Clustering
    similarity: str = "llm"
    match_threshold: float = 0.85
    merge_threshold: float = 0.85
    foundational_threshold: float = 0.5
    core_threshold: float = 0.2

    # Promotion
    n_threshold: int = 3
    cognitive_load_cap: int = 25
    cascade: bool = False  # Opt-in: lower N when too few axioms qualify
    min_axiom_target: int = 3
    generate_notation: bool = True

    # Tensions
    tension_max_items: int = 25

    # Lifecycle
    resynthesis_threshold: float = 0.3  # New-content ratio forcing full resynthesis
    contradiction_limit: int = 2  # New high-severity tensions forcing full resynthesis
    delta_match_threshold: float = 0.7  # Token overlap treating a principle as "seen"

    def validate(self) -> "SynthesisConfig":
        """Raise ConfigurationError on the first invalid value."""
        problems = []

        for name in (
            "concurrency",
            "n_threshold",
            "cognitive_load_cap",
            "min_axiom_target",
            "tension_max_items",
        ):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, int) or value < 1:
                problems.append(f"{name} must be a positive integer, got {value!r}")

        for name in ("max_retries", "contradiction_limit"):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, int) or value < 0:
                problems.append(f"{name} must be a non-negative integer, got {value!r}")

        for name in (
            "detection_confidence",
            "match_threshold",
            "merge_threshold",
            "foundational_threshold",
            "core_threshold",
            "resynthesis_threshold",
            "delta_match_threshold",
        ):
            value = getattr(self, name)
            if (
                isinstance(value, bool)
                or not isinstance(value, (int, float))
                or value != value
                or not 0.0 <= value <= 1.0
            ):
                problems.append(f"{name} must be between 0 and 1, got {value!r}")

        if self.similarity not in VALID_SIMILARITY_STRATEGIES:
            problems.append(
                f"similarity must be one of {', '.join(VALID_SIMILARITY_STRATEGIES)}, "
                f"got {self.similarity!r}"
            )

        if not problems and self.foundational_threshold < self.core_threshold:
            problems.append("foundational_threshold must be >= core_threshold")

        if problems:
            message = "Invalid configuration: " + "; ".join(problems)
            logger.error(message)
            raise ConfigurationError(message)
        return self

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


# =============================================================================
# config.json schema
# =============================================================================

_FIELD_TYPES: Dict[str, Dict[str, Any]] = {
    "concurrency": {"type": "integer", "minimum": 1},
    "detection_confidence": {"type": "number", "minimum": 0, "maximum": 1},
    "generalize": {"type": "boolean"},
    "max_retries": {"type": "integer", "minimum": 0},
    "similarity": {"type": "string", "enum": list(VALID_SIMILARITY_STRATEGIES)},
    "match_threshold": {"type": "number", "minimum": 0, "maximum": 1},
    "merge_threshold": {"type": "number", "minimum": 0, "maximum": 1},
    "foundational_threshold": {"type": "number", "minimum": 0, "maximum": 1},
    "core_threshold": {"type": "number", "minimum": 0, "maximum": 1},
    "n_threshold": {"type": "integer", "minimum": 1},
    "cognitive_load_cap": {"type": "integer", "minimum": 1},
    "cascade": {"type": "boolean"},
    "min_axiom_target": {"type": "integer", "minimum": 1},
    "generate_notation": {"type": "boolean"},
    "tension_max_items": {"type": "integer", "minimum": 1},
    "resynthesis_threshold": {"type": "number", "minimum": 0, "maximum": 1},
    "contradiction_limit": {"type": "integer", "minimum": 0},
    "delta_match_threshold": {"type": "number", "minimum": 0, "maximum": 1},
}

CONFIG_SCHEMA: Dict[str, Any] = {
    "$schema": "http://json-schema.org/draft-07/schema#",
    "type": "object",
    "properties": _FIELD_TYPES,
    "additionalProperties": False,
}

_VALIDATOR = Draft7Validator(CONFIG_SCHEMA)

# Environment variable -> (field, parser)
ENV_OVERRIDES: Dict[str, tuple] = {
    "NEON_SOUL_LLM_CONCURRENCY": ("concurrency", int),
    "NEON_SOUL_MATCH_THRESHOLD": ("match_threshold", float),
    "NEON_SOUL_MERGE_THRESHOLD": ("merge_threshold", float),
    "NEON_SOUL_N_THRESHOLD": ("n_threshold", int),
    "NEON_SOUL_COGNITIVE_LOAD_CAP": ("cognitive_load_cap", int),
    "NEON_SOUL_SIMILARITY": ("similarity", str),
}


def validate_config_document(document: Any, source: str = CONFIG_FILE_NAME) -> Dict[str, Any]:
    """Schema-check a parsed config.json document."""
    errors = sorted(_VALIDATOR.iter_errors(document), key=lambda err: list(err.path))
    if errors:
        first = errors[0]
        path = ".".join(str(part) for part in first.path) or "(root)"
        message = f"Invalid configuration in {source} at {path}: {first.message}"
        logger.error(message)
        raise ConfigurationError(message)
    return dict(document)


def _read_config_file(path: Path) -> Dict[str, Any]:
    if not path.exists():
        return {}
    try:
        document = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        raise ConfigurationError(f"Failed to parse config at {path}: {e}") from e
    return validate_config_document(document, str(path))


def _read_env(environ: Mapping[str, str]) -> Dict[str, Any]:
    values: Dict[str, Any] = {}
    for var, (field_name, parser) in ENV_OVERRIDES.items():
        raw = environ.get(var)
        if raw is None or not raw.strip():
            continue
        try:
            values[field_name] = parser(raw.strip())
        except ValueError as e:
            message = f"Invalid value for {var}: {raw!r} ({e})"
            logger.error(message)
            raise ConfigurationError(message) from e
    return values


def load_config(
    workspace: Optional[Union[str, Path]] = None,
    overrides: Optional[Mapping[str, Any]] = None,
    *,
    environ: Optional[Mapping[str, str]] = None,
) -> SynthesisConfig:
    """Resolve and validate the configuration for a workspace."""
    values: Dict[str, Any] = {}
    if workspace is not None:
        values.update(_read_config_file(Path(workspace) / STATE_DIR_NAME / CONFIG_FILE_NAME))
    values.update(_read_env(os.environ if environ is None else environ))

    known = {f.name for f in fields(SynthesisConfig)}
    for key, value in (overrides or {}).items():
        if key not in known:
            raise ConfigurationError(f"Unknown configuration option: {key}")
        if value is not None:
            values[key] = value

    return SynthesisConfig(**values).validate()
