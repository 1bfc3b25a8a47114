"""SOUL.md rendering."""

from __future__ import annotations

from pathlib import Path
from typing import Dict, List, Optional, Sequence, Union

from neon_soul.types import Axiom, AxiomTier, utc_now

SOUL_FILE_NAME = "SOUL.md"

_TIER_HEADINGS = (
    (AxiomTier.CORE, "Core (N≥5)"),
    (AxiomTier.DOMAIN, "Domain (N≥3)"),
    (AxiomTier.EMERGING, "Emerging (N<3)"),
)


def _summary(summary: Dict[str, int]) -> str:
    if not summary:
        return "no provenance"
    return ", ".join(f"{category} {count}" for category, count in sorted(summary.items()))


def _axiom_lines(axiom: Axiom, names: Dict[str, str]) -> List[str]:
    forms = axiom.canonical_forms
    lines = [f"- **{forms.native}**"]
    if forms.notated:
        lines.append(f"  - Notation: {forms.notated}")
    lines.append(
        f"  - Evidence: N={axiom.n_count}, {axiom.dimension.value}, "
        f"{_summary(axiom.provenance_summary)}"
    )
    for tension in axiom.tensions:
        other = tension.principle_b if tension.principle_a == axiom.id else tension.principle_a
        label = names.get(other, other)
        detail = f": {tension.description}" if tension.description else ""
        lines.append(f"  - Tension ({tension.severity.value}) with \"{label}\"{detail}")
    return lines


def render_soul_markdown(
    axioms: Sequence[Axiom],
    blocked_candidates: Sequence[Axiom] = (),
    *,
    generated_at: Optional[str] = None,
) -> str:
    """Human-readable identity document from promoted and blocked axioms."""
    promoted = [a for a in axioms if not a.blocked]
    names = {a.id: a.text for a in promoted}
    lines = ["# SOUL.md", "", f"_Generated: {generated_at or utc_now()}_", ""]

    if not promoted:
        lines.extend(["No axioms promoted yet.", ""])

    for tier, heading in _TIER_HEADINGS:
        tier_axioms = [a for a in promoted if a.tier is tier]
        if not tier_axioms:
            continue
        lines.extend([f"## {heading}", ""])
        for axiom in sorted(tier_axioms, key=lambda a: (-a.weight, a.id)):
            lines.extend(_axiom_lines(axiom, names))
        lines.append("")

    if blocked_candidates:
        lines.extend(["## Blocked Candidates", ""])
        for candidate in blocked_candidates:
            lines.append(
                f"- {candidate.text} (N={candidate.n_count}, "
                f"{_summary(candidate.provenance_summary)}): {candidate.block_reason}"
            )
        lines.append("")

    return "\n".join(lines)


def write_soul_markdown(
    workspace: Union[str, Path],
    axioms: Sequence[Axiom],
    blocked_candidates: Sequence[Axiom] = (),
) -> Path:
    path = Path(workspace) / SOUL_FILE_NAME
    path.write_text(render_soul_markdown(axioms, blocked_candidates), encoding="utf-8")
    return path
