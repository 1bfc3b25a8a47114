"""
neon-soul CLI - synthesize an identity document from agent memory.

Usage:
    neon-soul synthesize WORKSPACE [--force-resynthesis] [--concurrency N]
                                   [--n-threshold N] [--match-threshold F]
                                   [--cap N] [--dry-run] [--json] [-v]
    neon-soul status WORKSPACE [--json]
    neon-soul trace WORKSPACE AXIOM_ID [--json]

Exit codes: 0 success, 1 fatal, 2 partial degradation, 3 lock held,
4 configuration error.
"""

import argparse
import logging
import sys

from neon_soul import __version__
from neon_soul.cli.commands import cmd_status, cmd_synthesize, cmd_trace
from neon_soul.cli.commands.helpers import EXIT_FATAL
from neon_soul.sources import DEFAULT_MEMORY_DIR

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="neon-soul",
        description="Distill memory files into a provenance-tracked SOUL.md",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging")

    subparsers = parser.add_subparsers(dest="command", required=True)

    # synthesize
    p_synth = subparsers.add_parser("synthesize", help="Run one synthesis cycle")
    p_synth.add_argument("workspace", help="Workspace directory")
    p_synth.add_argument("--force-resynthesis", action="store_true",
                         help="Rebuild principles from every signal")
    p_synth.add_argument("--concurrency", type=int, help="Parallel classification calls")
    p_synth.add_argument("--n-threshold", type=int, help="Evidence count needed for promotion")
    p_synth.add_argument("--match-threshold", type=float,
                         help="Similarity needed to reinforce a principle (0-1)")
    p_synth.add_argument("--cap", type=int, help="Maximum promoted axioms (cognitive load cap)")
    p_synth.add_argument("--memory-dir", default=DEFAULT_MEMORY_DIR,
                         help="Memory directory inside the workspace")
    p_synth.add_argument("--dry-run", action="store_true", help="Do not write any files")
    p_synth.add_argument("--json", "-j", action="store_true")

    # status
    p_status = subparsers.add_parser("status", help="Show synthesis state")
    p_status.add_argument("workspace", help="Workspace directory")
    p_status.add_argument("--json", "-j", action="store_true")

    # trace
    p_trace = subparsers.add_parser("trace", help="Trace an axiom back to its sources")
    p_trace.add_argument("workspace", help="Workspace directory")
    p_trace.add_argument("axiom_id", help="Axiom id, unique id prefix or CJK anchor")
    p_trace.add_argument("--json", "-j", action="store_true")

    return parser


def main(argv=None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.WARNING)

    try:
        if args.command == "synthesize":
            return cmd_synthesize(args)
        elif args.command == "status":
            return cmd_status(args)
        elif args.command == "trace":
            return cmd_trace(args)
    except Exception as e:
        logger.error(f"Command failed: {e}", exc_info=args.verbose)
        return EXIT_FATAL
    return EXIT_FATAL


if __name__ == "__main__":
    sys.exit(main())
