# SPDX-License-Identifier: GPL-3.0-or-later
"""
goal: shared data types for the knowledge subsystem. a process fingerprint is the identity of a
background process (command plus optional port, project and container discriminators), a knowledge
entry is what we learned about it, a pending entry tracks an unknown process until it has been seen
often enough to be worth classifying, and the analysis context carries the descriptive strings both
classifiers work from.

every type converts to and from plain dicts so the knowledge file stays human-readable JSON.
"""

from __future__ import annotations  # lets us use string annotations before classes are defined

import hashlib  # for the stable fingerprint hash
import json  # for the canonical form that gets hashed
from dataclasses import asdict, dataclass, field, fields, replace
from enum import Enum
from typing import Any

# longest value we put on a single prompt line before cutting it off
PROMPT_VALUE_LIMIT = 200


class ProcessCategory(str, Enum):
    """closed set of categories the UI groups processes by."""

    FRONTEND = "frontend"
    BACKEND = "backend"
    DATABASE = "database"
    CACHE = "cache"
    PROXY = "proxy"
    DEV_TOOL = "dev_tool"
    INFRASTRUCTURE = "infrastructure"
    UNKNOWN = "unknown"


class KnowledgeSource(str, Enum):
    """provenance of a knowledge entry."""

    BUILTIN = "builtin"  # shipped catalog
    API_LEARNED = "apilearned"  # classified by the remote ICA service
    HEURISTIC = "heuristic"  # local fallback classifier


def _require_object(data: Any, what: str) -> dict[str, Any]:
    if not isinstance(data, dict):
        raise TypeError(f"{what} must be an object, got {type(data).__name__}")
    return data


@dataclass(frozen=True)
class ProcessFingerprint:
    """Identity of a process: the command plus optional discriminators.

    Built progressively, e.g. ``ProcessFingerprint("node").with_port(3000)``.
    """

    command: str
    default_port: int | None = None  # port the process is usually seen on
    project_hash: str | None = None  # hash of the project directory
    container_prefix: str | None = None  # e.g. "dss" from container "dss_app"

    def __post_init__(self) -> None:
        if self.default_port is not None and not 0 <= int(self.default_port) <= 65535:
            raise ValueError(f"port out of range: {self.default_port}")

    def with_port(self, port: int) -> ProcessFingerprint:
        return replace(self, default_port=int(port))

    def with_project_hash(self, project_hash: str) -> ProcessFingerprint:
        return replace(self, project_hash=project_hash)

    def with_container_prefix(self, prefix: str) -> ProcessFingerprint:
        return replace(self, container_prefix=prefix)

    def hash_key(self) -> str:
        """16 hex chars derived only from the four identity fields (stable across restarts)."""
        canonical = json.dumps(
            [self.command, self.default_port, self.project_hash, self.container_prefix],
            separators=(",", ":"),
        )
        return hashlib.sha256(canonical.encode("utf-8")).hexdigest()[:16]

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ProcessFingerprint:
        data = _require_object(data, "fingerprint")
        port = data.get("default_port")
        return cls(
            command=str(data["command"]),
            default_port=int(port) if port is not None else None,
            project_hash=data.get("project_hash"),
            container_prefix=data.get("container_prefix"),
        )


def _truncate(value: str, limit: int = PROMPT_VALUE_LIMIT) -> str:
    if len(value) > limit:
        return value[:limit] + "..."
    return value


@dataclass
class AnalysisContext:
    """Descriptive strings about one process instance, consumed by both classifiers."""

    command: str = ""
    port: int | None = None
    project_name: str | None = None
    container_name: str | None = None
    container_prefix: str | None = None
    # filled in by the context gatherer
    executable_path: str | None = None
    working_directory: str | None = None
    full_command: str | None = None
    macos_app_name: str | None = None
    macos_app_kind: str | None = None
    docker_service: str | None = None
    docker_project: str | None = None
    docker_image: str | None = None
    docker_workdir: str | None = None
    docker_cmd: str | None = None
    pid: int | None = None

    # (label, attribute) in the order they appear in the prompt
    PROMPT_FIELDS = (
        ("Command", "command"),
        ("Port", "port"),
        ("Executable", "executable_path"),
        ("Full command", "full_command"),
        ("Working directory", "working_directory"),
        ("Project", "project_name"),
        ("macOS App Name", "macos_app_name"),
        ("macOS App Kind", "macos_app_kind"),
        ("Docker container", "container_name"),
        ("Docker compose service", "docker_service"),
        ("Docker compose project", "docker_project"),
        ("Docker image", "docker_image"),
        ("Container workdir", "docker_workdir"),
        ("Container command", "docker_cmd"),
        ("Container prefix", "container_prefix"),
    )

    def to_prompt(self) -> str:
        lines = [f"Command: {_truncate(self.command)}"]
        for label, attr in self.PROMPT_FIELDS[1:]:
            value = getattr(self, attr)
            if value is None:
                continue
            lines.append(f"{label}: {_truncate(str(value))}")
        return "\n".join(lines)

    def copy(self) -> AnalysisContext:
        return replace(self)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AnalysisContext:
        data = _require_object(data, "context")
        known = {f.name for f in fields(cls)}
        values = {k: v for k, v in data.items() if k in known and v is not None}
        for key, value in values.items():
            if key in ("port", "pid"):
                if isinstance(value, bool):
                    raise TypeError(f"context field '{key}' must be an integer")
                values[key] = int(value)
            elif not isinstance(value, str):
                raise TypeError(f"context field '{key}' must be a string")
        values.setdefault("command", "")
        return cls(**values)


@dataclass
class IcaAnalysisResponse:
    """Classification result, produced by the remote client or the fallback."""

    display_name: str
    description: str
    category: ProcessCategory
    group_hint: str | None = None
    confidence: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["category"] = self.category.value
        return data


@dataclass
class KnowledgeEntry:
    fingerprint: ProcessFingerprint
    display_name: str
    description: str
    category: ProcessCategory
    group_id: str | None
    confidence: float
    source: KnowledgeSource
    sightings: int
    updated_at: int  # epoch seconds

    def hash_key(self) -> str:
        return self.fingerprint.hash_key()

    def to_dict(self) -> dict[str, Any]:
        return {
            "fingerprint": self.fingerprint.to_dict(),
            "display_name": self.display_name,
            "description": self.description,
            "category": self.category.value,
            "group_id": self.group_id,
            "confidence": self.confidence,
            "source": self.source.value,
            "sightings": self.sightings,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> KnowledgeEntry:
        return cls(
            fingerprint=ProcessFingerprint.from_dict(data["fingerprint"]),
            display_name=str(data["display_name"]),
            description=str(data["description"]),
            category=ProcessCategory(data.get("category", "unknown")),
            group_id=data.get("group_id"),
            confidence=float(data["confidence"]),
            source=KnowledgeSource(data.get("source", "heuristic")),
            sightings=int(data.get("sightings", 0)),
            updated_at=int(data.get("updated_at", 0)),
        )


@dataclass
class PendingEntry:
    fingerprint: ProcessFingerprint
    sightings: int
    first_seen: int
    last_seen: int
    context: AnalysisContext

    def to_dict(self) -> dict[str, Any]:
        return {
            "fingerprint": self.fingerprint.to_dict(),
            "sightings": self.sightings,
            "first_seen": self.first_seen,
            "last_seen": self.last_seen,
            "context": self.context.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PendingEntry:
        data = _require_object(data, "pending entry")
        context = data.get("context")
        return cls(
            fingerprint=ProcessFingerprint.from_dict(data["fingerprint"]),
            sightings=int(data["sightings"]),
            first_seen=int(data["first_seen"]),
            last_seen=int(data["last_seen"]),
            context=AnalysisContext.from_dict(context if context is not None else {}),
        )


@dataclass
class KnowledgeBase:
    """The persisted aggregate: schema version, learned entries and the pending queue."""

    version: int = 0
    entries: dict[str, KnowledgeEntry] = field(default_factory=dict)
    pending_analysis: dict[str, PendingEntry] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "version": self.version,
            "entries": {k: e.to_dict() for k, e in self.entries.items()},
            "pending_analysis": {k: p.to_dict() for k, p in self.pending_analysis.items()},
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> KnowledgeBase:
        entries = data.get("entries") or {}
        pending = data.get("pending_analysis") or {}
        if not isinstance(entries, dict) or not isinstance(pending, dict):
            raise TypeError("entries and pending_analysis must be objects")
        return cls(
            version=int(data["version"]),
            entries={k: KnowledgeEntry.from_dict(v) for k, v in entries.items()},
            pending_analysis={k: PendingEntry.from_dict(v) for k, v in pending.items()},
        )


@dataclass
class LearningConfig:
    """Knobs for the learning pipeline. Every field has a default that works out of the box."""

    enabled: bool = True
    min_sightings: int = 2  # sightings before a process is submitted for analysis
    rate_limit_secs: float = 5.0  # minimum gap between two remote calls
    max_pending: int = 20  # cap on tracked-but-unclassified processes
    ica_url: str = "http://localhost:4000"
    setec_url: str = "http://localhost:4001"
    stale_pending_secs: int = 86400  # pending entries not seen for this long are dropped
    service_name: str = "portsage"
    request_timeout_secs: float = 30.0
    service_key: str | None = None  # explicit ICA key, skips the setec lookup
