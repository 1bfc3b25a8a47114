"""Provenance tracing: axiom -> principles -> signals -> source lines."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Union

from neon_soul.types import Axiom, Principle, Signal, SignalRef, SourceCategory


@dataclass
class SignalLink:
    ref: SignalRef
    signal: Optional[Signal] = None  # None when the signal record was not persisted

    @property
    def location(self) -> str:
        line = self.signal.provenance.line if self.signal is not None else None
        return f"{self.ref.source_file}:{line}" if line else self.ref.source_file


@dataclass
class PrincipleLink:
    principle: Principle
    signals: List[SignalLink] = field(default_factory=list)


@dataclass
class ProvenanceChain:
    axiom: Axiom
    principles: List[PrincipleLink] = field(default_factory=list)
    missing_principles: List[str] = field(default_factory=list)

    @property
    def signal_count(self) -> int:
        return sum(len(link.signals) for link in self.principles)

    @property
    def source_files(self) -> List[str]:
        files: List[str] = []
        for link in self.principles:
            for s in link.signals:
                if s.ref.source_file not in files:
                    files.append(s.ref.source_file)
        return files


def _index(items):
    if items is None:
        return {}
    if isinstance(items, Mapping):
        return dict(items)
    return {item.id: item for item in items}


def trace_axiom(
    axiom: Axiom,
    principles: Union[Mapping[str, Principle], Iterable[Principle]],
    signals: Union[Mapping[str, Signal], Iterable[Signal], None] = None,
) -> ProvenanceChain:
    principle_map = _index(principles)
    signal_map = _index(signals)
    chain = ProvenanceChain(axiom=axiom)
    for principle_id in axiom.derived_from_principles:
        principle = principle_map.get(principle_id)
        if principle is None:
            chain.missing_principles.append(principle_id)
            continue
        link = PrincipleLink(principle=principle)
        for ref in principle.derived_from:
            link.signals.append(SignalLink(ref=ref, signal=signal_map.get(ref.signal_id)))
        chain.principles.append(link)
    return chain


def find_axiom(axioms: Sequence[Axiom], key: str) -> Optional[Axiom]:
    """Look an axiom up by id, unique id prefix, or CJK anchor character."""
    for axiom in axioms:
        if axiom.id == key:
            return axiom
    prefixed = [a for a in axioms if a.id.startswith(key)]
    if len(prefixed) == 1:
        return prefixed[0]
    for axiom in axioms:
        if axiom.canonical_forms.cjk and axiom.canonical_forms.cjk == key:
            return axiom
    return None


def provenance_distribution(signals: Iterable[Signal]) -> Dict[str, int]:
    """Signal count per source category (every category present, zero included)."""
    distribution = {c.value: 0 for c in SourceCategory}
    for signal in signals:
        distribution[signal.provenance.source_category.value] += 1
    return distribution


def _clip(text: str, limit: int = 50) -> str:
    return text if len(text) <= limit else text[: limit - 3] + "..."


def format_provenance_chain(chain: ProvenanceChain) -> str:
    """Tree view of one axiom's provenance."""
    forms = chain.axiom.canonical_forms
    lines = [forms.notated or forms.native]
    if forms.notated:
        lines.append(f"  {forms.native}")

    for i, link in enumerate(chain.principles):
        last = i == len(chain.principles) - 1 and not chain.missing_principles
        branch, child = ("└──", "    ") if last else ("├──", "│   ")
        p = link.principle
        lines.append(f'{branch} "{_clip(p.representative_text)}" (N={p.n_count})')
        for j, s in enumerate(link.signals):
            leaf = "└──" if j == len(link.signals) - 1 else "├──"
            lines.append(
                f"{child}{leaf} {s.location} [{s.ref.source_category.value}, {s.ref.stance.value}]"
            )

    for principle_id in chain.missing_principles:
        lines.append(f"└── {principle_id} (principle record not found)")
    return "\n".join(lines)
