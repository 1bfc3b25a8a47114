"""
NEON-SOUL - signal-to-axiom synthesis.

Distills an agent's memory files into a small set of provenance-tracked
identity axioms.
"""

from .config import SynthesisConfig, load_config
from .cycle import CycleManager, CycleOptions, CycleResult, CycleStatus, run_cycle
from .reflection import ReflectionLoop

try:
    from importlib.metadata import version

    __version__ = version("neon-soul")
except Exception:
    __version__ = "0.0.0"

__all__ = [
    "CycleManager",
    "CycleOptions",
    "CycleResult",
    "CycleStatus",
    "ReflectionLoop",
    "SynthesisConfig",
    "load_config",
    "run_cycle",
]
