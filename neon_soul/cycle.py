"""Cycle manager: run lifecycle, workspace lock and persisted state.

A cycle is one pass of the pipeline over a workspace:

    initial           no persisted state yet
    incremental       new signals join the persisted principles
    full-resynthesis  principles are rebuilt from every signal

Only the process holding ``.neon-soul/soul-synthesis.lock`` writes state.
The lock file is created atomically (``O_CREAT | O_EXCL``) and holds the
owner's PID; a lock whose owner is gone is reclaimed on the next attempt.
"""

from __future__ import annotations

import errno
import logging
import os
import re
import time
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Sequence, Union

from neon_soul.config import STATE_DIR_NAME, SynthesisConfig, load_config
from neon_soul.logging_config import (
    log_cycle_end,
    log_cycle_start,
    log_degradation,
    log_lock_recovered,
)
from neon_soul.persistence import WorkspaceStore
from neon_soul.protocols import (
    ClassificationCapability,
    LockHeldError,
    PersistenceError,
)
from neon_soul.reflection import ReflectionLoop, ReflectionResult
from neon_soul.render import write_soul_markdown
from neon_soul.similarity import EmbeddingCache, jaccard
from neon_soul.sources import DEFAULT_MEMORY_DIR, content_hash, read_workspace_sources
from neon_soul.trajectory import TrajectoryMetrics, TrajectoryTracker, hash_text
from neon_soul.types import (
    Axiom,
    CycleMode,
    CycleState,
    Signal,
    SourceBlock,
    utc_now,
)

logger = logging.getLogger(__name__)

LOCK_FILE = "soul-synthesis.lock"

# An empty lock file younger than this belongs to a writer that has not
# written its PID yet
LOCK_GRACE_SECONDS = 10.0

CONTRADICTION_OVERLAP = 0.5
_NEGATION_RE = re.compile(r"\b(not|never|avoid|don't|shouldn't|won't|except)\b", re.IGNORECASE)


class CycleStatus(str, Enum):
    SUCCESS = "success"
    PARTIAL_DEGRADATION = "partial-degradation"
    LOCK_HELD = "lock-held"
    FATAL = "fatal"


# =============================================================================
# Results
# =============================================================================


@dataclass
class CycleOptions:
    force_resynthesis: bool = False
    dry_run: bool = False
    write_soul: bool = True
    memory_dir: str = DEFAULT_MEMORY_DIR
    # Config overrides; None keeps the configured value
    concurrency: Optional[int] = None
    n_threshold: Optional[int] = None
    match_threshold: Optional[float] = None
    cognitive_load_cap: Optional[int] = None

    def overrides(self) -> Dict[str, Any]:
        return {
            "concurrency": self.concurrency,
            "n_threshold": self.n_threshold,
            "match_threshold": self.match_threshold,
            "cognitive_load_cap": self.cognitive_load_cap,
        }


@dataclass
class CycleDecision:
    mode: CycleMode
    reason: str
    triggers: List[str] = field(default_factory=list)
    new_content_ratio: float = 0.0
    contradictions: int = 0


@dataclass
class AxiomDiff:
    """Axiom texts gained, lost and kept relative to the previous run."""

    added: List[str] = field(default_factory=list)
    removed: List[str] = field(default_factory=list)
    retained: List[str] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(self.added or self.removed)


@dataclass
class CycleResult:
    status: CycleStatus
    mode: Optional[CycleMode] = None
    axioms: List[Axiom] = field(default_factory=list)
    blocked_candidates: List[Axiom] = field(default_factory=list)
    report: str = ""
    decision: Optional[CycleDecision] = None
    reflection: Optional[ReflectionResult] = None
    baseline_diff: Optional[AxiomDiff] = None
    trajectory: Optional[TrajectoryMetrics] = None
    cycle_count: int = 0
    recovered_lock_pid: Optional[int] = None
    # Stored records from the previous run that could not be decoded
    skipped_records: List[str] = field(default_factory=list)
    soul_path: Optional[Path] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status in (CycleStatus.SUCCESS, CycleStatus.PARTIAL_DEGRADATION)


# =============================================================================
# Mode detection helpers
# =============================================================================


def is_known(text: str, known_texts: Sequence[str], threshold: float) -> bool:
    return any(jaccard(text, known) >= threshold for known in known_texts)


def new_content_ratio(
    candidate_texts: Sequence[str], known_texts: Sequence[str], threshold: float
) -> float:
    """Share of candidate texts that match nothing already known."""
    if not candidate_texts:
        return 0.0
    new = sum(1 for text in candidate_texts if not is_known(text, known_texts, threshold))
    return new / len(candidate_texts)


def count_contradictions(axiom_texts: Sequence[str], candidate_texts: Sequence[str]) -> int:
    """Same-topic pairs where exactly one side is negated."""
    count = 0
    for axiom_text in axiom_texts:
        axiom_negated = bool(_NEGATION_RE.search(axiom_text))
        for text in candidate_texts:
            if jaccard(axiom_text, text) <= CONTRADICTION_OVERLAP:
                continue
            if axiom_negated != bool(_NEGATION_RE.search(text)):
                count += 1
    return count


def diff_axioms(previous: Sequence[Axiom], current: Sequence[Axiom]) -> AxiomDiff:
    before = {hash_text(a.text): a.text for a in previous if not a.blocked}
    after = {hash_text(a.text): a.text for a in current if not a.blocked}
    return AxiomDiff(
        added=[text for h, text in after.items() if h not in before],
        removed=[text for h, text in before.items() if h not in after],
        retained=[text for h, text in after.items() if h in before],
    )


def _read_pid(path: Path) -> Optional[int]:
    try:
        content = path.read_text(encoding="utf-8").strip()
    except OSError:
        return None
    try:
        return int(content)
    except ValueError:
        return None


def _pid_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except OSError as e:
        if e.errno == errno.ESRCH:
            return False
        if e.errno == errno.EPERM:
            return True
        raise
    return True


# =============================================================================
# Cycle manager
# =============================================================================


class CycleManager:
    def __init__(
        self,
        workspace: Union[str, Path],
        config: Optional[SynthesisConfig] = None,
        *,
        capability: Optional[ClassificationCapability] = None,
        embedding_cache: Optional[EmbeddingCache] = None,
    ) -> None:
        self.workspace = Path(workspace)
        self.config = config or SynthesisConfig()
        self.capability = capability
        self.embedding_cache = embedding_cache
        self.store = WorkspaceStore(self.workspace)
        self._lock_held = False
        self.recovered_lock_pid: Optional[int] = None

    @property
    def lock_path(self) -> Path:
        return self.workspace / STATE_DIR_NAME / LOCK_FILE

    @property
    def lock_held(self) -> bool:
        return self._lock_held

    # ---- Lock ----

    def read_lock_owner(self) -> Optional[int]:
        return _read_pid(self.lock_path)

    def acquire_lock(self) -> None:
        """Take the workspace lock; LockHeldError if a live process holds it."""
        self.store.ensure()
        pid = os.getpid()
        for _ in range(2):
            try:
                fd = os.open(str(self.lock_path), os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
            except FileExistsError:
                if not self._reclaim_if_stale():
                    owner = self.read_lock_owner()
                    raise LockHeldError(
                        f"Synthesis already in progress (PID: {owner if owner else 'unknown'}). "
                        f"Remove {self.lock_path} if stale.",
                        owner_pid=owner,
                    )
                continue
            except OSError as e:
                raise PersistenceError(f"Cannot create lock {self.lock_path}: {e}") from e
            try:
                os.write(fd, str(pid).encode("ascii"))
            finally:
                os.close(fd)
            self._lock_held = True
            logger.debug("Acquired synthesis lock %s (pid=%d)", self.lock_path, pid)
            self.store.cleanup_temp_files()
            return
        raise LockHeldError(f"Could not acquire {self.lock_path} after reclaiming a stale lock")

    def _reclaim_if_stale(self) -> bool:
        """Move a dead owner's lock aside. True when the caller should retry.

        The lock is renamed to a unique tombstone before it is deleted, so
        only one of several concurrent reclaimers can take it. If the
        tombstone turns out not to be the file that was judged stale, a newer
        owner got there first and its lock is put back.
        """
        try:
            seen = self.lock_path.stat()
        except FileNotFoundError:
            return True
        owner = self.read_lock_owner()
        if owner is not None:
            if _pid_alive(owner):
                return False
        elif time.time() - seen.st_mtime < LOCK_GRACE_SECONDS:
            return False

        tombstone = self.lock_path.with_name(f"{LOCK_FILE}.stale-{uuid.uuid4().hex}")
        try:
            os.rename(self.lock_path, tombstone)
        except FileNotFoundError:
            # Another process reclaimed it first
            return True
        except OSError as e:
            logger.warning("Failed to move stale lock %s aside: %s", self.lock_path, e)
            return False

        moved = tombstone.stat()
        same_file = (moved.st_ino, moved.st_dev) == (seen.st_ino, seen.st_dev)
        if not same_file or _read_pid(tombstone) != owner:
            self._restore_lock(tombstone)
            return False

        try:
            tombstone.unlink()
        except OSError as e:
            logger.warning("Failed to remove stale lock %s: %s", tombstone, e)
        logger.warning("Recovered stale lock %s (pid=%s)", self.lock_path, owner)
        self.recovered_lock_pid = owner
        log_lock_recovered(self.workspace, owner)
        return True

    def _restore_lock(self, tombstone: Path) -> None:
        try:
            os.link(tombstone, self.lock_path)
        except FileExistsError:
            logger.warning("Lock %s was re-taken while restoring it", self.lock_path)
        except OSError as e:
            logger.warning("Failed to restore lock %s: %s", self.lock_path, e)
        finally:
            try:
                tombstone.unlink()
            except OSError as e:
                logger.warning("Failed to remove lock tombstone %s: %s", tombstone, e)

    def release_lock(self) -> None:
        """Remove the lock if this manager holds it."""
        if not self._lock_held:
            return
        self._lock_held = False
        if self.read_lock_owner() != os.getpid():
            logger.warning("Lock %s is no longer ours; leaving it in place", self.lock_path)
            return
        try:
            self.lock_path.unlink()
            logger.debug("Released synthesis lock %s", self.lock_path)
        except OSError as e:
            logger.warning("Failed to release lock %s: %s", self.lock_path, e)

    @contextmanager
    def lock(self) -> Iterator["CycleManager"]:
        self.acquire_lock()
        try:
            yield self
        finally:
            self.release_lock()

    # ---- Mode ----

    def decide_mode(
        self,
        state: Optional[CycleState],
        candidate_texts: Sequence[str],
        contradictions: int = 0,
        force: bool = False,
        known_texts: Optional[Sequence[str]] = None,
    ) -> CycleDecision:
        if force:
            return CycleDecision(
                CycleMode.FULL_RESYNTHESIS,
                "Manual override via --force-resynthesis",
                ["--force-resynthesis flag set"],
                contradictions=contradictions,
            )
        if state is None:
            return CycleDecision(CycleMode.INITIAL, "No existing soul state")

        known = list(state.principle_texts) if known_texts is None else list(known_texts)
        ratio = new_content_ratio(candidate_texts, known, self.config.delta_match_threshold)
        triggers = []
        if ratio >= self.config.resynthesis_threshold:
            triggers.append(
                f"New content ({ratio:.0%}) reaches threshold "
                f"({self.config.resynthesis_threshold:.0%})"
            )
        if contradictions >= self.config.contradiction_limit:
            triggers.append(f"{contradictions} axioms contradicted by new evidence")

        if triggers:
            return CycleDecision(
                CycleMode.FULL_RESYNTHESIS,
                "Significant changes detected",
                triggers,
                new_content_ratio=ratio,
                contradictions=contradictions,
            )
        return CycleDecision(
            CycleMode.INCREMENTAL,
            "Merge new signals into existing soul",
            new_content_ratio=ratio,
            contradictions=contradictions,
        )

    # ---- Run ----

    def run_cycle(
        self,
        blocks: Optional[Sequence[SourceBlock]] = None,
        options: Optional[CycleOptions] = None,
    ) -> CycleResult:
        """Lock, synthesize, persist. Never leaves the lock behind."""
        options = options or CycleOptions()
        loop = ReflectionLoop.from_config(
            self.config, self._capability(), embedding_cache=self.embedding_cache
        )

        try:
            self.acquire_lock()
        except LockHeldError as e:
            logger.warning("%s", e)
            result = CycleResult(status=CycleStatus.LOCK_HELD, error=str(e))
            result.report = format_cycle_report(result)
            return result
        except PersistenceError as e:
            logger.error("Cannot start cycle in %s: %s", self.workspace, e)
            result = CycleResult(status=CycleStatus.FATAL, error=str(e))
            result.report = format_cycle_report(result)
            return result

        result = CycleResult(status=CycleStatus.FATAL, recovered_lock_pid=self.recovered_lock_pid)
        log_cycle_start(
            self.workspace,
            "full-resynthesis" if options.force_resynthesis else "auto",
            os.getpid(),
        )
        try:
            self._run_locked(loop, blocks, options, result)
        except PersistenceError as e:
            logger.error("Persistence failed for %s: %s", self.workspace, e)
            result.status = CycleStatus.FATAL
            result.error = str(e)
        finally:
            self.release_lock()
            reflection = result.reflection
            log_cycle_end(
                self.workspace,
                status=result.status.value,
                mode=result.mode.value if result.mode else "none",
                signals=len(reflection.signals) if reflection else 0,
                principles=len(reflection.principles) if reflection else 0,
                axioms=len(result.axioms),
                blocked=len(result.blocked_candidates),
                degraded=reflection.degraded if reflection else 0,
            )

        result.report = format_cycle_report(result)
        return result

    def _capability(self) -> ClassificationCapability:
        if self.capability is None:
            from neon_soul.classification import create_classification_service
            from neon_soul.models.auto import auto_configure_model

            self.capability = create_classification_service(
                auto_configure_model(), max_retries=self.config.max_retries
            )
        return self.capability

    def _run_locked(
        self,
        loop: ReflectionLoop,
        blocks: Optional[Sequence[SourceBlock]],
        options: CycleOptions,
        result: CycleResult,
    ) -> None:
        self.store.skipped_records.clear()
        state = self.store.load_state()
        committed = state.generation if state else None
        previous_signals = self.store.load_signals(committed) if state else []
        previous_principles = self.store.load_principles(committed) if state else []
        previous_axioms = (
            [a for a in self.store.load_axioms(committed) if not a.blocked] if state else []
        )
        result.skipped_records = list(self.store.skipped_records)

        if blocks is None:
            blocks = read_workspace_sources(self.workspace, options.memory_dir)
        blocks = list(blocks)

        started = time.monotonic()
        extraction = loop.extractor.extract(blocks)
        for item in extraction.degraded_items:
            log_degradation(item.stage, item.item, item.reason, self.workspace)

        threshold = self.config.delta_match_threshold
        known_texts = (list(state.principle_texts) if state else []) + [
            s.comparable_text for s in previous_signals
        ]
        novel: List[Signal] = [
            s for s in extraction.signals if not is_known(s.comparable_text, known_texts, threshold)
        ]
        contradictions = count_contradictions(
            [a.text for a in previous_axioms], [s.comparable_text for s in novel]
        )
        decision = self.decide_mode(
            state,
            [s.comparable_text for s in extraction.signals],
            contradictions,
            options.force_resynthesis,
            known_texts=known_texts,
        )
        result.decision = decision
        result.mode = decision.mode
        logger.info("Cycle mode: %s (%s)", decision.mode.value, decision.reason)

        if decision.mode is CycleMode.INCREMENTAL:
            loop.store.load(previous_principles)
            reflection = loop.synthesize(novel, prior_signals=previous_signals)
        else:
            reflection = loop.synthesize(extraction.signals)
        reflection.extraction = extraction
        reflection.duration_seconds = time.monotonic() - started
        result.reflection = reflection
        result.axioms = reflection.axioms
        result.blocked_candidates = reflection.blocked_candidates

        if decision.mode is CycleMode.FULL_RESYNTHESIS:
            result.baseline_diff = diff_axioms(previous_axioms, reflection.axioms)

        tracker = TrajectoryTracker(state.trajectory if state else None)
        tracker.record([a.text for a in reflection.axioms], len(reflection.principles))
        result.trajectory = tracker.metrics()

        result.cycle_count = (state.cycle_count if state else 0) + 1
        degraded = (
            reflection.degraded > 0 or bool(reflection.errors) or bool(result.skipped_records)
        )
        result.status = CycleStatus.PARTIAL_DEGRADATION if degraded else CycleStatus.SUCCESS

        if options.dry_run:
            logger.info("Dry run: persisted state left unchanged")
            return

        # Records go to a fresh generation; replacing the state file that
        # names it commits the run
        generation = self.store.new_generation(result.cycle_count)
        try:
            self.store.save_signals(reflection.signals, generation)
            self.store.save_principles(reflection.principles, generation)
            self.store.save_axioms(
                list(reflection.axioms) + list(reflection.blocked_candidates), generation
            )
            self.store.save_state(
                CycleState(
                    last_run_timestamp=utc_now(),
                    mode=decision.mode,
                    content_hash=content_hash(blocks),
                    principle_texts=[p.representative_text for p in reflection.principles],
                    contradiction_count=decision.contradictions,
                    lock_owner_pid=os.getpid(),
                    cycle_count=result.cycle_count,
                    axiom_ids=[a.id for a in reflection.axioms],
                    trajectory=tracker.points,
                    generation=generation,
                )
            )
        except PersistenceError:
            self.store.discard_generation(generation)
            raise
        self.store.prune_generations(keep=generation)

        if options.write_soul:
            try:
                result.soul_path = write_soul_markdown(
                    self.workspace, reflection.axioms, reflection.blocked_candidates
                )
            except OSError as e:
                logger.error("State committed but SOUL.md could not be written: %s", e)
                result.status = CycleStatus.PARTIAL_DEGRADATION
                result.error = f"Cannot write SOUL.md: {e}"


def run_cycle(
    workspace_path: Union[str, Path],
    options: Optional[CycleOptions] = None,
    *,
    capability: Optional[ClassificationCapability] = None,
    blocks: Optional[Sequence[SourceBlock]] = None,
    config: Optional[SynthesisConfig] = None,
) -> CycleResult:
    """Run one cycle over a workspace.

    Configuration comes from the workspace config file and environment,
    with ``options`` overrides on top. Raises ConfigurationError for an
    invalid configuration; every other outcome is reported by status.
    """
    options = options or CycleOptions()
    if config is None:
        config = load_config(workspace_path, options.overrides())
    manager = CycleManager(workspace_path, config, capability=capability)
    return manager.run_cycle(blocks, options)


# =============================================================================
# Reports
# =============================================================================


def format_cycle_decision(decision: CycleDecision) -> str:
    lines = [f"Mode: {decision.mode.value}", f"Reason: {decision.reason}"]
    if decision.triggers:
        lines.append("Triggers:")
        lines.extend(f"  - {trigger}" for trigger in decision.triggers)
    return "\n".join(lines)


def format_cycle_report(result: CycleResult) -> str:
    """Markdown summary of a cycle. Always explains an empty outcome."""
    lines = ["# Synthesis Report", ""]
    if result.reflection is None:
        lines.append(f"**Status:** {result.status.value}")
        if result.error:
            lines.extend(["", result.error])
        if result.status is CycleStatus.LOCK_HELD:
            lines.extend(["", "Another synthesis run is in progress; try again later."])
        return "\n".join(lines)

    reflection = result.reflection
    compression = reflection.compression.metrics
    lines.extend(
        [
            "| Metric | Value |",
            "|--------|-------|",
            f"| Status | {result.status.value} |",
            f"| Mode | {result.mode.value if result.mode else '-'} |",
            f"| Cycle | {result.cycle_count} |",
            f"| Signals | {len(reflection.signals)} |",
            f"| Principles | {len(reflection.principles)} |",
            f"| Axioms | {len(result.axioms)} |",
            f"| Blocked candidates | {len(result.blocked_candidates)} |",
            f"| Degraded items | {reflection.degraded} |",
            f"| Effective N-threshold | {compression.effective_threshold} |",
            f"| Compression | {reflection.metrics.compression_ratio:.2f}:1 |",
            f"| Duration | {reflection.duration_seconds:.1f}s |",
            "",
        ]
    )
    if result.error:
        lines.extend([f"**Error:** {result.error}", ""])
    if result.recovered_lock_pid is not None:
        lines.extend([f"Recovered a stale lock left by PID {result.recovered_lock_pid}.", ""])

    if result.decision is not None:
        lines.extend(["## Cycle Decision", "", format_cycle_decision(result.decision), ""])

    lines.extend(["## Provenance Distribution", ""])
    total = sum(reflection.provenance_distribution.values())
    for category, count in reflection.provenance_distribution.items():
        share = count / total * 100 if total else 0.0
        lines.append(f"- {category}: {count} ({share:.0f}%)")
    lines.append("")

    lines.extend(["## Axiom Promotion", ""])
    lines.append(f"- Promoted: {len(result.axioms)}")
    lines.append(f"- Blocked: {len(result.blocked_candidates)}")
    for reason, count in sorted(reflection.promotion.reasons.items()):
        lines.append(f"  - {reason}: {count}")
    if not result.axioms:
        lines.append("")
        lines.append(_empty_explanation(reflection, compression.effective_threshold))
    lines.append("")

    if result.blocked_candidates:
        lines.extend(["### Blocked Candidates", ""])
        for candidate in result.blocked_candidates:
            lines.append(f"- {candidate.text} (N={candidate.n_count}): {candidate.block_reason}")
        lines.append("")

    if reflection.degraded or reflection.errors or result.skipped_records:
        lines.extend(["## Degraded Items", ""])
        for note in result.skipped_records:
            lines.append(f"- [load] skipped {note}")
        for item in reflection.extraction.degraded_items:
            lines.append(f"- [{item.stage}] {item.item}: {item.reason}")
        if reflection.tension_checks_unavailable:
            lines.append(f"- [tension] {reflection.tension_checks_unavailable} pair check(s) unavailable")
        for error in reflection.errors:
            lines.append(f"- [error] {error}")
        lines.append("")

    if result.baseline_diff is not None:
        diff = result.baseline_diff
        lines.extend(["## Changes Since Previous Soul", ""])
        lines.extend(f"- Added: {text}" for text in diff.added)
        lines.extend(f"- Removed: {text}" for text in diff.removed)
        lines.append(f"- Retained: {len(diff.retained)}")
        lines.append("")

    guardrails = reflection.compression.guardrails
    if guardrails.any:
        lines.extend(["## Guardrail Warnings", ""])
        lines.extend(f"- {message}" for message in guardrails.messages)
        lines.append("")

    if result.trajectory is not None and len(result.trajectory.history) > 1:
        lines.append(
            f"Trajectory stability: {result.trajectory.attractor_strength:.0%} "
            f"({'stable' if result.trajectory.is_stable else 'settling'})"
        )
    return "\n".join(lines).rstrip() + "\n"


def _empty_explanation(reflection: ReflectionResult, threshold: int) -> str:
    if not reflection.signals:
        return "No axioms promoted: no identity-bearing statements were found in the sources."
    if reflection.blocked_candidates:
        return (
            "No axioms promoted: every candidate was blocked "
            "(see Blocked Candidates for reasons)."
        )
    return (
        f"No axioms promoted: no principle reached the N>={threshold} evidence threshold "
        f"({len(reflection.principles)} principle(s) below threshold)."
    )
