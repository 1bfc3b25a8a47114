"""Default source reader: markdown files under the workspace memory directory.

The top-level directory under the memory root decides the source category:

    memory/external/...   -> external (feedback, third-party observations)
    memory/feedback/...   -> external
    memory/curated/...    -> curated (material the agent chose to keep)
    memory/anything-else  -> self

A file can override its category and elicitation in a front-matter block::

    ---
    source_category: external
    elicitation: user-elicited
    ---
"""

from __future__ import annotations

import hashlib
import logging
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Tuple, Union

from neon_soul.config import STATE_DIR_NAME
from neon_soul.types import (
    VALID_ELICITATION_VALUES,
    VALID_SOURCE_CATEGORY_VALUES,
    Elicitation,
    SourceBlock,
    SourceCategory,
)

logger = logging.getLogger(__name__)

DEFAULT_MEMORY_DIR = "memory"
MARKDOWN_SUFFIXES = (".md", ".markdown")

CATEGORY_DIRECTORIES: Dict[str, SourceCategory] = {
    "external": SourceCategory.EXTERNAL,
    "feedback": SourceCategory.EXTERNAL,
    "curated": SourceCategory.CURATED,
}

# Generated output, never read back as input
_SKIPPED_FILES = {"SOUL.md"}


def category_for(relative: Path) -> SourceCategory:
    if len(relative.parts) > 1:
        return CATEGORY_DIRECTORIES.get(relative.parts[0].lower(), SourceCategory.SELF)
    return SourceCategory.SELF


def split_front_matter(text: str) -> Tuple[Dict[str, str], str]:
    """Separate a leading ``---`` block of ``key: value`` lines from the body."""
    if not text.startswith("---"):
        return {}, text
    lines = text.splitlines()
    for end in range(1, len(lines)):
        if lines[end].strip() == "---":
            meta = {}
            for line in lines[1:end]:
                key, sep, value = line.partition(":")
                if sep:
                    meta[key.strip().lower()] = value.strip().strip("'\"")
            # Keep line numbers stable for provenance
            body = "\n" * (end + 1) + "\n".join(lines[end + 1 :])
            return meta, body
    return {}, text


def _iter_markdown(root: Path) -> Iterator[Path]:
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames[:] = sorted(d for d in dirnames if not d.startswith(".") and d != STATE_DIR_NAME)
        for name in sorted(filenames):
            if name.lower().endswith(MARKDOWN_SUFFIXES) and name not in _SKIPPED_FILES:
                yield Path(dirpath) / name


def memory_root(workspace: Union[str, Path], memory_dir: str = DEFAULT_MEMORY_DIR) -> Path:
    workspace = Path(workspace)
    candidate = workspace / memory_dir
    return candidate if candidate.is_dir() else workspace


def read_workspace_sources(
    workspace: Union[str, Path], memory_dir: str = DEFAULT_MEMORY_DIR
) -> List[SourceBlock]:
    """One SourceBlock per markdown file, in sorted path order."""
    root = memory_root(workspace, memory_dir)
    blocks: List[SourceBlock] = []
    for path in _iter_markdown(root):
        relative = path.relative_to(root)
        try:
            text = path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as e:
            logger.warning("Skipping unreadable source %s: %s", path, e)
            continue

        meta, body = split_front_matter(text)
        category = category_for(relative)
        declared = meta.get("source_category") or meta.get("category")
        if declared in VALID_SOURCE_CATEGORY_VALUES:
            category = SourceCategory(declared)
        elicitation = Elicitation.AGENT_INITIATED
        if meta.get("elicitation") in VALID_ELICITATION_VALUES:
            elicitation = Elicitation(meta["elicitation"])

        blocks.append(
            SourceBlock(
                text=body,
                source_category=category,
                source_file=relative.as_posix(),
                timestamp=_modified_at(path),
                elicitation=elicitation,
            )
        )
    logger.info("Read %d source file(s) from %s", len(blocks), root)
    return blocks


def _modified_at(path: Path) -> Optional[str]:
    try:
        return datetime.fromtimestamp(path.stat().st_mtime, tz=timezone.utc).isoformat()
    except OSError:
        return None


def content_hash(blocks: List[SourceBlock]) -> str:
    """Stable hash of the source set, used to detect unchanged input."""
    digest = hashlib.sha256()
    for block in sorted(blocks, key=lambda b: b.source_file):
        digest.update(block.source_file.encode("utf-8"))
        digest.update(b"\0")
        digest.update(block.text.encode("utf-8"))
        digest.update(b"\0")
    return digest.hexdigest()
