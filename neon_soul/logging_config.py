"""Logging setup for synthesis runs.

Two streams:
- ``synthesis-{date}.log``: the ``neon_soul`` logger hierarchy
- ``cycle-events-{date}.log``: one line per lifecycle event (start, end,
  lock recovery, degradation summary), append-only

Both live under ``<workspace>/.neon-soul/logs`` or ``$NEON_SOUL_DATA_DIR/logs``.
"""

from __future__ import annotations

import logging
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Union

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"

_VALID_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}


def get_log_dir(workspace: Optional[Union[str, Path]] = None) -> Path:
    data_dir = os.environ.get("NEON_SOUL_DATA_DIR")
    if data_dir:
        return Path(data_dir) / "logs"
    base = Path(workspace) if workspace is not None else Path.cwd()
    return base / ".neon-soul" / "logs"


def _today() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%d")


def setup_neon_soul_logging(
    workspace: Optional[Union[str, Path]] = None, level: str = "INFO"
) -> logging.Logger:
    """Attach a file handler (and a console handler at DEBUG) to ``neon_soul``.

    Safe to call repeatedly: existing handlers are not duplicated.
    Unknown level names fall back to INFO.
    """
    level_name = (level or "INFO").upper()
    if level_name not in _VALID_LEVELS:
        level_name = "INFO"

    logger = logging.getLogger("neon_soul")
    logger.setLevel(getattr(logging, level_name))

    log_dir = get_log_dir(workspace)
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = (log_dir / f"synthesis-{_today()}.log").resolve()

    has_file = any(
        isinstance(h, logging.FileHandler) and Path(h.baseFilename) == log_file
        for h in logger.handlers
    )
    if not has_file:
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
        logger.addHandler(file_handler)

    if level_name == "DEBUG":
        has_console = any(
            isinstance(h, logging.StreamHandler) and not isinstance(h, logging.FileHandler)
            for h in logger.handlers
        )
        if not has_console:
            console = logging.StreamHandler()
            console.setFormatter(logging.Formatter(LOG_FORMAT))
            logger.addHandler(console)

    return logger


def log_cycle_event(
    event: str, details: str, workspace: Optional[Union[str, Path]] = None
) -> None:
    """Append one line to the cycle-events log.

    Failures to write are reported on the module logger and otherwise ignored:
    event logging never aborts a run.
    """
    log_dir = get_log_dir(workspace)
    line = f"{datetime.now(timezone.utc).isoformat()} | {event} | {details}\n"
    try:
        log_dir.mkdir(parents=True, exist_ok=True)
        with open(log_dir / f"cycle-events-{_today()}.log", "a", encoding="utf-8") as f:
            f.write(line)
    except OSError as e:
        logging.getLogger(__name__).warning("Could not write cycle event log: %s", e)


def log_cycle_start(workspace: Union[str, Path], mode_hint: str, pid: int) -> None:
    log_cycle_event("start", f"pid={pid}, requested={mode_hint}", workspace)


def log_cycle_end(
    workspace: Union[str, Path],
    *,
    status: str,
    mode: str,
    signals: int,
    principles: int,
    axioms: int,
    blocked: int,
    degraded: int,
) -> None:
    log_cycle_event(
        "end",
        f"status={status}, mode={mode}, signals={signals}, principles={principles}, "
        f"axioms={axioms}, blocked={blocked}, degraded={degraded}",
        workspace,
    )


def log_lock_recovered(workspace: Union[str, Path], stale_pid: Optional[int]) -> None:
    log_cycle_event("lock-recovered", f"stale_pid={stale_pid}", workspace)


def log_degradation(
    stage: str, item: str, reason: str, workspace: Optional[Union[str, Path]] = None
) -> None:
    """Record one degraded item (a default substituted for an unavailable answer)."""
    log_cycle_event("degraded", f"stage={stage}, item={item}, reason={reason}", workspace)
