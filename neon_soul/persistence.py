"""Workspace persistence: JSON files under ``<workspace>/.neon-soul/``.

Files:
- soul-state.json                    CycleState (delta marker, trajectory, counters)
- runs/<generation>/signals.json      extracted signals
- runs/<generation>/principles.json   clustered principles with their signal refs
- runs/<generation>/axioms.json       promoted and blocked axioms

A run writes its records into a new generation directory and then
replaces soul-state.json, which names that generation. Until the state
file is replaced, readers keep seeing the previous generation.

Every write goes to a temp file in the same directory, is fsynced, then
moved into place with ``os.replace``. A crash mid-write leaves the
previous file untouched and an orphan ``.tmp-soul-*`` file that the next
lock holder removes.

Records written by older versions may lack fields. Missing or unknown
values load as conservative defaults (provenance self, stance assert)
with a warning. A record that cannot be decoded at all is skipped and
listed in ``WorkspaceStore.skipped_records``.
"""

from __future__ import annotations

import json
import logging
import os
import re
import shutil
import tempfile
import uuid
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Type, TypeVar, Union

from neon_soul.config import STATE_DIR_NAME
from neon_soul.protocols import PersistenceError
from neon_soul.types import (
    Axiom,
    AxiomTier,
    CanonicalForms,
    Centrality,
    CycleMode,
    CycleState,
    Dimension,
    Elicitation,
    Importance,
    Principle,
    PrincipleEvent,
    Severity,
    Signal,
    SignalProvenance,
    SignalRef,
    SignalType,
    SourceCategory,
    Stance,
    Tension,
    TrajectoryPoint,
    to_iso,
    utc_now,
)

logger = logging.getLogger(__name__)

STATE_FILE = "soul-state.json"
SIGNALS_FILE = "signals.json"
PRINCIPLES_FILE = "principles.json"
AXIOMS_FILE = "axioms.json"
TEMP_PREFIX = ".tmp-soul-"
RUNS_DIR = "runs"
RECORD_FILES = (SIGNALS_FILE, PRINCIPLES_FILE, AXIOMS_FILE)
_GENERATION_RE = re.compile(r"^[A-Za-z0-9_-]+\Z")

FORMAT_VERSION = 1

E = TypeVar("E", bound=Enum)
R = TypeVar("R")


# =============================================================================
# Field coercion
# =============================================================================


def _enum(enum_cls: Type[E], value: Any, default: E, what: str) -> E:
    """Coerce a stored value to ``enum_cls``; fall back to ``default`` with a warning."""
    if value is None:
        return default
    try:
        return enum_cls(value)
    except ValueError:
        logger.warning("Unknown %s %r in stored record; using %s", what, value, default.value)
        return default


def _float(value: Any, default: float = 0.0) -> float:
    if isinstance(value, bool):
        return default
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def _generation(value: Any) -> Optional[str]:
    if value is None or value == "":
        return None
    if not isinstance(value, str) or not _GENERATION_RE.match(value):
        raise ValueError(f"invalid generation {value!r}")
    return value


def _timestamp(value: Any) -> str:
    """Normalize a stored timestamp; unparseable values become 'now'."""
    iso = to_iso(value) if isinstance(value, str) else None
    if iso is None:
        if value is not None:
            logger.warning("Unparseable timestamp %r in stored record; using now", value)
        return utc_now()
    return iso


# =============================================================================
# Record <-> dict
# =============================================================================


def signal_to_dict(signal: Signal) -> Dict[str, Any]:
    p = signal.provenance
    return {
        "id": signal.id,
        "text": signal.text,
        "generalized_text": signal.generalized_text,
        "dimension": signal.dimension.value,
        "stance": signal.stance.value,
        "importance": signal.importance.value,
        "signal_type": signal.signal_type.value,
        "confidence": signal.confidence,
        "provenance": {
            "source_category": p.source_category.value,
            "source_file": p.source_file,
            "extracted_at": to_iso(p.extracted_at),
            "elicitation": p.elicitation.value,
            "line": p.line,
            "source_timestamp": to_iso(p.source_timestamp),
        },
    }


def signal_from_dict(data: Dict[str, Any]) -> Signal:
    prov = data.get("provenance") or {}
    if not prov:
        logger.warning("Signal %s has no provenance; treating it as self-authored", data.get("id"))
    return Signal(
        id=data["id"],
        text=data.get("text", ""),
        generalized_text=data.get("generalized_text"),
        dimension=_enum(Dimension, data.get("dimension"), Dimension.UNCLASSIFIED, "dimension"),
        stance=_enum(Stance, data.get("stance"), Stance.ASSERT, "stance"),
        importance=_enum(Importance, data.get("importance"), Importance.SUPPORTING, "importance"),
        signal_type=_enum(SignalType, data.get("signal_type"), SignalType.VALUE, "signal type"),
        confidence=_float(data.get("confidence")),
        provenance=SignalProvenance(
            source_category=_enum(
                SourceCategory, prov.get("source_category"), SourceCategory.SELF, "source category"
            ),
            source_file=prov.get("source_file", ""),
            extracted_at=_timestamp(prov.get("extracted_at")),
            elicitation=_enum(
                Elicitation, prov.get("elicitation"), Elicitation.AGENT_INITIATED, "elicitation"
            ),
            line=prov.get("line"),
            source_timestamp=to_iso(prov.get("source_timestamp")),
        ),
    )


def signal_ref_to_dict(ref: SignalRef) -> Dict[str, Any]:
    return {
        "signal_id": ref.signal_id,
        "original_text": ref.original_text,
        "similarity": ref.similarity,
        "source_file": ref.source_file,
        "source_category": ref.source_category.value,
        "stance": ref.stance.value,
        "importance": ref.importance.value,
        "elicitation": ref.elicitation.value,
        "weight": ref.weight,
        "extracted_at": to_iso(ref.extracted_at),
    }


def signal_ref_from_dict(data: Dict[str, Any]) -> SignalRef:
    return SignalRef(
        signal_id=data["signal_id"],
        original_text=data.get("original_text", ""),
        similarity=_float(data.get("similarity"), 1.0),
        source_file=data.get("source_file", ""),
        source_category=_enum(
            SourceCategory, data.get("source_category"), SourceCategory.SELF, "source category"
        ),
        stance=_enum(Stance, data.get("stance"), Stance.ASSERT, "stance"),
        importance=_enum(Importance, data.get("importance"), Importance.SUPPORTING, "importance"),
        elicitation=_enum(
            Elicitation, data.get("elicitation"), Elicitation.AGENT_INITIATED, "elicitation"
        ),
        weight=_float(data.get("weight")),
        extracted_at=to_iso(data.get("extracted_at")),
    )


def principle_to_dict(principle: Principle) -> Dict[str, Any]:
    return {
        "id": principle.id,
        "representative_text": principle.representative_text,
        "representative_signal_id": principle.representative_signal_id,
        "representative_weight": principle.representative_weight,
        "dimension": principle.dimension.value,
        "centrality": principle.centrality.value,
        "weight": principle.weight,
        "n_count": principle.n_count,
        "derived_from": [signal_ref_to_dict(ref) for ref in principle.derived_from],
        "history": [
            {
                "kind": e.kind,
                "at": to_iso(e.at),
                "signal_id": e.signal_id,
                "merged_from": e.merged_from,
            }
            for e in principle.history
        ],
        "created_at": to_iso(principle.created_at),
    }


def principle_from_dict(data: Dict[str, Any]) -> Principle:
    refs = [signal_ref_from_dict(r) for r in data.get("derived_from") or []]
    stored_n = data.get("n_count")
    if stored_n is not None and stored_n != len(refs):
        logger.warning(
            "Principle %s stored n_count=%s but has %d signal refs; using the refs",
            data.get("id"),
            stored_n,
            len(refs),
        )
    return Principle(
        id=data["id"],
        representative_text=data.get("representative_text", ""),
        representative_signal_id=data.get(
            "representative_signal_id", refs[0].signal_id if refs else ""
        ),
        representative_weight=_float(data.get("representative_weight")),
        dimension=_enum(Dimension, data.get("dimension"), Dimension.UNCLASSIFIED, "dimension"),
        centrality=_enum(
            Centrality, data.get("centrality"), Centrality.SUPPORTING, "centrality"
        ),
        weight=_float(data.get("weight")),
        derived_from=refs,
        history=[
            PrincipleEvent(
                kind=e.get("kind", "created"),
                at=_timestamp(e.get("at")),
                signal_id=e.get("signal_id"),
                merged_from=e.get("merged_from"),
            )
            for e in data.get("history") or []
        ],
        created_at=_timestamp(data.get("created_at")),
    )


def tension_to_dict(tension: Tension) -> Dict[str, Any]:
    return {
        "id": tension.id,
        "principle_a": tension.principle_a,
        "principle_b": tension.principle_b,
        "severity": tension.severity.value,
        "description": tension.description,
        "detected_at": to_iso(tension.detected_at),
    }


def tension_from_dict(data: Dict[str, Any]) -> Tension:
    return Tension(
        id=data["id"],
        principle_a=data["principle_a"],
        principle_b=data["principle_b"],
        severity=_enum(Severity, data.get("severity"), Severity.LOW, "severity"),
        description=data.get("description", ""),
        detected_at=_timestamp(data.get("detected_at")),
    )


def axiom_to_dict(axiom: Axiom) -> Dict[str, Any]:
    forms = axiom.canonical_forms
    return {
        "id": axiom.id,
        "canonical_forms": {
            "native": forms.native,
            "notated": forms.notated,
            "cjk": forms.cjk,
            "emoji": forms.emoji,
            "math": forms.math,
        },
        "derived_from_principles": list(axiom.derived_from_principles),
        "dimension": axiom.dimension.value,
        "tier": axiom.tier.value,
        "weight": axiom.weight,
        "n_count": axiom.n_count,
        "provenance_diversity": axiom.provenance_diversity,
        "provenance_summary": dict(axiom.provenance_summary),
        "tensions": [tension_to_dict(t) for t in axiom.tensions],
        "blocked": axiom.blocked,
        "block_reason": axiom.block_reason,
        "created_at": to_iso(axiom.created_at),
    }


def axiom_from_dict(data: Dict[str, Any]) -> Axiom:
    forms = data.get("canonical_forms") or {}
    native = forms.get("native") or data.get("text", "")
    return Axiom(
        id=data["id"],
        canonical_forms=CanonicalForms(
            native=native,
            notated=forms.get("notated"),
            cjk=forms.get("cjk"),
            emoji=forms.get("emoji"),
            math=forms.get("math"),
        ),
        derived_from_principles=tuple(data.get("derived_from_principles") or ()),
        dimension=_enum(Dimension, data.get("dimension"), Dimension.UNCLASSIFIED, "dimension"),
        tier=_enum(AxiomTier, data.get("tier"), AxiomTier.EMERGING, "tier"),
        weight=_float(data.get("weight")),
        n_count=int(data.get("n_count") or 0),
        provenance_diversity=int(data.get("provenance_diversity") or 0),
        provenance_summary=dict(data.get("provenance_summary") or {}),
        tensions=tuple(tension_from_dict(t) for t in data.get("tensions") or []),
        blocked=bool(data.get("blocked", False)),
        block_reason=data.get("block_reason"),
        created_at=_timestamp(data.get("created_at")),
    )


def cycle_state_to_dict(state: CycleState) -> Dict[str, Any]:
    return {
        "version": FORMAT_VERSION,
        "last_run_timestamp": to_iso(state.last_run_timestamp),
        "mode": state.mode.value,
        "content_hash": state.content_hash,
        "principle_texts": list(state.principle_texts),
        "contradiction_count": state.contradiction_count,
        "lock_owner_pid": state.lock_owner_pid,
        "cycle_count": state.cycle_count,
        "axiom_ids": list(state.axiom_ids),
        "generation": state.generation,
        "trajectory": [
            {
                "run_at": to_iso(p.run_at),
                "axiom_count": p.axiom_count,
                "principle_count": p.principle_count,
                "stability": p.stability,
                "axiom_hashes": list(p.axiom_hashes),
            }
            for p in state.trajectory
        ],
    }


def cycle_state_from_dict(data: Dict[str, Any]) -> CycleState:
    return CycleState(
        last_run_timestamp=_timestamp(data.get("last_run_timestamp")),
        mode=_enum(CycleMode, data.get("mode"), CycleMode.INITIAL, "cycle mode"),
        content_hash=data.get("content_hash", ""),
        principle_texts=list(data.get("principle_texts") or []),
        contradiction_count=int(data.get("contradiction_count") or 0),
        lock_owner_pid=data.get("lock_owner_pid"),
        cycle_count=int(data.get("cycle_count") or 0),
        axiom_ids=list(data.get("axiom_ids") or []),
        generation=_generation(data.get("generation")),
        trajectory=[
            TrajectoryPoint(
                run_at=_timestamp(p.get("run_at")),
                axiom_count=int(p.get("axiom_count") or 0),
                principle_count=int(p.get("principle_count") or 0),
                stability=_float(p.get("stability")),
                axiom_hashes=list(p.get("axiom_hashes") or []),
            )
            for p in data.get("trajectory") or []
        ],
    )


# =============================================================================
# Atomic file IO
# =============================================================================


def atomic_write_json(path: Path, payload: Any) -> None:
    """Write JSON to ``path`` all-or-nothing."""
    directory = path.parent
    try:
        fd, tmp_name = tempfile.mkstemp(prefix=TEMP_PREFIX, suffix=".json", dir=directory)
    except OSError as e:
        raise PersistenceError(f"Cannot write to {directory}: {e}") from e
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(payload, f, indent=2, ensure_ascii=False)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_name, path)
    except OSError as e:
        try:
            os.unlink(tmp_name)
        except OSError:
            pass
        raise PersistenceError(f"Failed to write {path}: {e}") from e


def read_json(path: Path) -> Optional[Any]:
    """Parsed JSON at ``path``, or None when the file does not exist."""
    try:
        text = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return None
    except OSError as e:
        raise PersistenceError(f"Cannot read {path}: {e}") from e
    try:
        return json.loads(text)
    except json.JSONDecodeError as e:
        raise PersistenceError(f"Corrupt JSON in {path}: {e}") from e


class WorkspaceStore:
    """Load and save pipeline records for one workspace.

    Workspaces written before generations existed keep their records
    directly in the state directory and still load.
    """

    def __init__(self, workspace: Union[str, Path]) -> None:
        self.workspace = Path(workspace)
        self.state_dir = self.workspace / STATE_DIR_NAME
        self.runs_dir = self.state_dir / RUNS_DIR
        # "<file>[<index>]: <error>" for every stored record that failed to load
        self.skipped_records: List[str] = []

    def ensure(self) -> Path:
        """Create the state directory; PersistenceError if the workspace is unusable."""
        if not self.workspace.is_dir():
            raise PersistenceError(f"Workspace {self.workspace} does not exist or is not a directory")
        try:
            self.state_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise PersistenceError(f"Cannot create {self.state_dir}: {e}") from e
        return self.state_dir

    def cleanup_temp_files(self) -> int:
        """Remove temp files left by an interrupted write. Returns the count."""
        if not self.state_dir.is_dir():
            return 0
        removed = 0
        for orphan in self.state_dir.rglob(f"{TEMP_PREFIX}*"):
            try:
                orphan.unlink()
                removed += 1
            except OSError as e:
                logger.warning("Could not remove orphan temp file %s: %s", orphan, e)
        if removed:
            logger.info("Removed %d orphan temp file(s) from %s", removed, self.state_dir)
        return removed

    # ---- Generations ----

    def new_generation(self, cycle_count: int) -> str:
        return f"{cycle_count:04d}-{uuid.uuid4().hex[:8]}"

    def records_dir(self, generation: Optional[str] = None) -> Path:
        """Directory holding the record files of ``generation``.

        Without a generation, the one named by the committed state is used.
        """
        if generation is None:
            state = self.load_state()
            generation = state.generation if state else None
        return self.runs_dir / generation if generation else self.state_dir

    def prune_generations(self, keep: str) -> int:
        """Delete every generation but ``keep``, plus pre-generation record files."""
        removed = 0
        if self.runs_dir.is_dir():
            for path in self.runs_dir.iterdir():
                if path.name == keep or not path.is_dir():
                    continue
                try:
                    shutil.rmtree(path)
                    removed += 1
                except OSError as e:
                    logger.warning("Could not remove old generation %s: %s", path, e)
        for filename in RECORD_FILES:
            try:
                (self.state_dir / filename).unlink()
            except FileNotFoundError:
                continue
            except OSError as e:
                logger.warning("Could not remove legacy record file %s: %s", filename, e)
        return removed

    def discard_generation(self, generation: str) -> None:
        """Remove an uncommitted generation after a failed run."""
        path = self.runs_dir / generation
        try:
            shutil.rmtree(path)
        except FileNotFoundError:
            return
        except OSError as e:
            logger.warning("Could not remove uncommitted generation %s: %s", path, e)

    # ---- State ----

    def load_state(self) -> Optional[CycleState]:
        data = read_json(self.state_dir / STATE_FILE)
        if data is None:
            return None
        if not isinstance(data, dict):
            raise PersistenceError(f"{STATE_FILE} does not contain an object")
        try:
            return cycle_state_from_dict(data)
        except (AttributeError, TypeError, ValueError) as e:
            raise PersistenceError(f"{STATE_FILE} is malformed: {e}") from e

    def save_state(self, state: CycleState) -> None:
        self.ensure()
        atomic_write_json(self.state_dir / STATE_FILE, cycle_state_to_dict(state))

    # ---- Records ----

    def _load_list(self, filename: str, key: str, generation: Optional[str]) -> List[Any]:
        data = read_json(self.records_dir(generation) / filename)
        if data is None:
            return []
        # Early versions stored a bare list
        if isinstance(data, list):
            return data
        if not isinstance(data, dict):
            raise PersistenceError(f"{filename} has an unexpected layout")
        return list(data.get(key) or [])

    def _load_records(
        self,
        filename: str,
        key: str,
        decode: Callable[[Dict[str, Any]], R],
        generation: Optional[str],
    ) -> List[R]:
        records: List[R] = []
        for index, data in enumerate(self._load_list(filename, key, generation)):
            try:
                if not isinstance(data, dict):
                    raise TypeError(f"expected an object, got {type(data).__name__}")
                records.append(decode(data))
            except (AttributeError, KeyError, TypeError, ValueError) as e:
                note = f"{filename}[{index}]: {type(e).__name__}: {e}"
                logger.warning("Skipping malformed stored record %s", note)
                self.skipped_records.append(note)
        return records

    def _save_list(
        self,
        filename: str,
        key: str,
        items: Iterable[Dict[str, Any]],
        generation: Optional[str],
    ) -> None:
        self.ensure()
        directory = self.records_dir(generation)
        try:
            directory.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise PersistenceError(f"Cannot create {directory}: {e}") from e
        atomic_write_json(
            directory / filename,
            {"version": FORMAT_VERSION, "saved_at": utc_now(), key: list(items)},
        )

    def load_signals(self, generation: Optional[str] = None) -> List[Signal]:
        return self._load_records(SIGNALS_FILE, "signals", signal_from_dict, generation)

    def save_signals(self, signals: Iterable[Signal], generation: Optional[str] = None) -> None:
        self._save_list(SIGNALS_FILE, "signals", (signal_to_dict(s) for s in signals), generation)

    def load_principles(self, generation: Optional[str] = None) -> List[Principle]:
        return self._load_records(PRINCIPLES_FILE, "principles", principle_from_dict, generation)

    def save_principles(
        self, principles: Iterable[Principle], generation: Optional[str] = None
    ) -> None:
        self._save_list(
            PRINCIPLES_FILE, "principles", (principle_to_dict(p) for p in principles), generation
        )

    def load_axioms(self, generation: Optional[str] = None) -> List[Axiom]:
        return self._load_records(AXIOMS_FILE, "axioms", axiom_from_dict, generation)

    def save_axioms(self, axioms: Iterable[Axiom], generation: Optional[str] = None) -> None:
        self._save_list(AXIOMS_FILE, "axioms", (axiom_to_dict(a) for a in axioms), generation)
