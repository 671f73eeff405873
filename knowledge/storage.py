# SPDX-License-Identifier: GPL-3.0-or-later
"""
goal: load and save the knowledge base as a single JSON file in the user's home directory.

the file is versioned. a missing file means first run: we build a fresh knowledge base, seed it
with the builtin catalog and write it out. an older file is walked through the migration chain
and written back. a file that exists but cannot be read or parsed is an error for the caller to
handle; it is never replaced behind the user's back.

writes go to a sibling temp file first and are then renamed over the real one, so a crash
mid-write leaves the previous file intact. the file is owner read/write only because it holds
paths and project names from the user's machine.
"""

from __future__ import annotations

import json
import logging
import os
from collections.abc import Callable
from pathlib import Path
from typing import Any

from knowledge.builtin import populate_builtins
from knowledge.types import KnowledgeBase

logger = logging.getLogger(__name__)

KNOWLEDGE_FILE = ".portsage-knowledge.json"
CURRENT_VERSION = 1
FILE_MODE = 0o600


class KnowledgeBaseError(Exception):
    """The knowledge file could not be read, parsed, migrated or written."""


def get_knowledge_path() -> Path:
    return Path.home() / KNOWLEDGE_FILE


# migrations


def _migrate_v0_to_v1(data: dict[str, Any]) -> dict[str, Any]:
    # v0 files predate the pending queue
    out = dict(data)
    out.setdefault("entries", {})
    out.setdefault("pending_analysis", {})
    out["version"] = 1
    return out


# version -> step that upgrades a raw document from that version to the next one
MIGRATIONS: dict[int, Callable[[dict[str, Any]], dict[str, Any]]] = {
    0: _migrate_v0_to_v1,
}


def migrate(data: dict[str, Any]) -> dict[str, Any]:
    """Run every migration step between the document's version and CURRENT_VERSION."""
    version = int(data.get("version", 0))
    while version < CURRENT_VERSION:
        step = MIGRATIONS.get(version)
        if step is None:
            raise KnowledgeBaseError(f"no migration from knowledge base version {version}")
        data = step(data)
        new_version = int(data.get("version", version))
        if new_version <= version:
            raise KnowledgeBaseError(f"migration from version {version} did not advance")
        version = new_version
    return data


# load / save


def load_knowledge_base(path: str | Path | None = None) -> KnowledgeBase:
    path = Path(path) if path is not None else get_knowledge_path()

    if not path.exists():
        kb = KnowledgeBase(version=CURRENT_VERSION)
        added = populate_builtins(kb)
        save_knowledge_base(kb, path)
        logger.info("created knowledge base at %s with %d builtin entries", path, added)
        return kb

    try:
        content = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise KnowledgeBaseError(f"failed to read knowledge base file {path}") from exc
    try:
        data = json.loads(content)
    except json.JSONDecodeError as exc:
        raise KnowledgeBaseError(f"failed to parse knowledge base file {path}") from exc
    if not isinstance(data, dict):
        raise KnowledgeBaseError(f"knowledge base file {path} does not hold a JSON object")

    try:
        version = int(data.get("version", 0))
    except (TypeError, ValueError) as exc:
        raise KnowledgeBaseError(f"knowledge base file {path} has an invalid version") from exc

    migrated = version < CURRENT_VERSION
    if migrated:
        data = migrate(data)
    elif version > CURRENT_VERSION:
        logger.warning(
            "knowledge base %s is version %d, newer than supported %d",
            path,
            version,
            CURRENT_VERSION,
        )

    try:
        kb = KnowledgeBase.from_dict(data)
    except (KeyError, TypeError, ValueError) as exc:
        raise KnowledgeBaseError(f"knowledge base file {path} is malformed: {exc}") from exc

    if migrated:
        logger.info("migrated knowledge base %s from version %d", path, version)
        save_knowledge_base(kb, path)
    return kb


def save_knowledge_base(kb: KnowledgeBase, path: str | Path | None = None) -> None:
    path = Path(path) if path is not None else get_knowledge_path()
    content = json.dumps(kb.to_dict(), indent=2)
    tmp = path.with_name(path.name + ".tmp")
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(tmp, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, FILE_MODE)
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
        os.chmod(tmp, FILE_MODE)  # the mode passed to os.open is ignored if tmp already existed
        os.replace(tmp, path)
    except OSError as exc:
        try:
            tmp.unlink()
        except OSError:
            pass
        raise KnowledgeBaseError(f"failed to write knowledge base file {path}") from exc
