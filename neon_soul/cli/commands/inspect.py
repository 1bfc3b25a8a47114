"""Read-only inspection commands: status and trace."""

import logging

from neon_soul.cli.commands.helpers import EXIT_FATAL, EXIT_OK, print_json, resolve_workspace
from neon_soul.cycle import CycleManager
from neon_soul.persistence import WorkspaceStore
from neon_soul.protocols import PersistenceError
from neon_soul.provenance import find_axiom, format_provenance_chain, trace_axiom
from neon_soul.trajectory import TrajectoryTracker, format_trajectory_report

logger = logging.getLogger(__name__)


def cmd_status(args) -> int:
    """Show persisted cycle state, axiom counts and lock owner."""
    try:
        workspace = resolve_workspace(args.workspace)
        store = WorkspaceStore(workspace)
        state = store.load_state()
        axioms = store.load_axioms(state.generation if state else None)
    except (ValueError, PersistenceError) as e:
        logger.error("%s", e)
        return EXIT_FATAL

    lock_owner = CycleManager(workspace).read_lock_owner()
    promoted = [a for a in axioms if not a.blocked]
    blocked = [a for a in axioms if a.blocked]
    trajectory = TrajectoryTracker(state.trajectory if state else None).metrics()

    if args.json:
        print_json(
            {
                "initialized": state is not None,
                "cycle_count": state.cycle_count if state else 0,
                "last_run": state.last_run_timestamp if state else None,
                "mode": state.mode.value if state else None,
                "axioms": len(promoted),
                "blocked_candidates": len(blocked),
                "lock_owner_pid": lock_owner,
                "stable": trajectory.is_stable,
                "attractor_strength": trajectory.attractor_strength,
            }
        )
        return EXIT_OK

    if state is None:
        print(f"No synthesis has run in {workspace} yet.")
        if lock_owner:
            print(f"Lock held by PID {lock_owner}")
        return EXIT_OK

    print(f"Workspace: {workspace}")
    print(f"Cycles: {state.cycle_count}  (last: {state.last_run_timestamp}, {state.mode.value})")
    print(f"Axioms: {len(promoted)} promoted, {len(blocked)} blocked")
    print(f"Lock: {'held by PID ' + str(lock_owner) if lock_owner else 'free'}")
    if len(trajectory.history) > 1:
        print()
        print(format_trajectory_report(trajectory))
    return EXIT_OK


def cmd_trace(args) -> int:
    """Print the provenance chain of one axiom."""
    try:
        workspace = resolve_workspace(args.workspace)
        store = WorkspaceStore(workspace)
        state = store.load_state()
        generation = state.generation if state else None
        axioms = store.load_axioms(generation)
        principles = store.load_principles(generation)
        signals = store.load_signals(generation)
    except (ValueError, PersistenceError) as e:
        logger.error("%s", e)
        return EXIT_FATAL

    axiom = find_axiom(axioms, args.axiom_id)
    if axiom is None:
        logger.error("No axiom matches '%s'", args.axiom_id)
        return EXIT_FATAL

    chain = trace_axiom(axiom, principles, signals)
    if args.json:
        print_json(
            {
                "axiom": {"id": axiom.id, "text": axiom.text, "blocked": axiom.blocked},
                "principles": [
                    {
                        "id": link.principle.id,
                        "text": link.principle.representative_text,
                        "n_count": link.principle.n_count,
                        "signals": [
                            {
                                "id": s.ref.signal_id,
                                "location": s.location,
                                "source_category": s.ref.source_category.value,
                                "stance": s.ref.stance.value,
                            }
                            for s in link.signals
                        ],
                    }
                    for link in chain.principles
                ],
                "missing_principles": chain.missing_principles,
            }
        )
    else:
        print(format_provenance_chain(chain))
    return EXIT_OK
