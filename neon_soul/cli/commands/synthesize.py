"""Synthesis command for the neon-soul CLI."""

import logging

from neon_soul.cli.commands.helpers import (
    EXIT_CONFIG,
    EXIT_DEGRADED,
    EXIT_FATAL,
    EXIT_LOCK_HELD,
    EXIT_OK,
    print_json,
    resolve_workspace,
)
from neon_soul.cycle import CycleOptions, CycleStatus, run_cycle
from neon_soul.logging_config import setup_neon_soul_logging
from neon_soul.persistence import axiom_to_dict
from neon_soul.protocols import ConfigurationError

logger = logging.getLogger(__name__)

_STATUS_EXIT_CODES = {
    CycleStatus.SUCCESS: EXIT_OK,
    CycleStatus.PARTIAL_DEGRADATION: EXIT_DEGRADED,
    CycleStatus.LOCK_HELD: EXIT_LOCK_HELD,
    CycleStatus.FATAL: EXIT_FATAL,
}


def cmd_synthesize(args) -> int:
    """Run one synthesis cycle and print its report."""
    try:
        workspace = resolve_workspace(args.workspace)
    except ValueError as e:
        logger.error("%s", e)
        return EXIT_FATAL

    setup_neon_soul_logging(workspace, "DEBUG" if args.verbose else "INFO")

    options = CycleOptions(
        force_resynthesis=args.force_resynthesis,
        dry_run=args.dry_run,
        memory_dir=args.memory_dir,
        concurrency=args.concurrency,
        n_threshold=args.n_threshold,
        match_threshold=args.match_threshold,
        cognitive_load_cap=args.cap,
    )
    try:
        result = run_cycle(workspace, options)
    except ConfigurationError as e:
        logger.error("Invalid configuration: %s", e)
        return EXIT_CONFIG

    if args.json:
        reflection = result.reflection
        print_json(
            {
                "status": result.status.value,
                "mode": result.mode.value if result.mode else None,
                "cycle": result.cycle_count,
                "signals": len(reflection.signals) if reflection else 0,
                "principles": len(reflection.principles) if reflection else 0,
                "degraded": reflection.degraded if reflection else 0,
                "axioms": [axiom_to_dict(a) for a in result.axioms],
                "blocked_candidates": [axiom_to_dict(a) for a in result.blocked_candidates],
                "soul_path": str(result.soul_path) if result.soul_path else None,
                "error": result.error,
            }
        )
    else:
        print(result.report)
        if result.soul_path:
            print(f"Wrote {result.soul_path}")

    return _STATUS_EXIT_CODES[result.status]
