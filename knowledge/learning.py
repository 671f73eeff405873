# SPDX-License-Identifier: GPL-3.0-or-later
"""
goal: the sighting policy and the read/write operations over a knowledge base.

each fingerprint is in one of three states:
• known: it has a knowledge entry. sightings just bump the entry's counter.
  a builtin entry (keyed by bare command) also covers that command on any port, as long as the
  process is not tied to a project or container; those still get learned on their own.
• pending(n): it has been seen n times but not classified yet.
• unknown: neither.

a new fingerprint becomes pending(1) if the pending queue has room, otherwise the sighting is
dropped (the queue is full, so we stop tracking new unknowns until promotion or stale cleanup
frees a slot). once a pending fingerprint reaches min_sightings, every further sighting hands
the accumulated context back to the caller so it can be queued for analysis. the pending entry
stays until store_result turns it into a knowledge entry, which is the only way into "known".

nothing here locks; callers apply these functions from a single writer.
"""

from __future__ import annotations

import time

from knowledge.types import (
    AnalysisContext,
    IcaAnalysisResponse,
    KnowledgeBase,
    KnowledgeEntry,
    KnowledgeSource,
    LearningConfig,
    PendingEntry,
    ProcessFingerprint,
)


def _now() -> int:
    return int(time.time())


def record_sighting(
    kb: KnowledgeBase,
    fingerprint: ProcessFingerprint,
    context: AnalysisContext,
    config: LearningConfig,
) -> AnalysisContext | None:
    """Record one sighting; returns the context to analyze when the fingerprint is promoted."""
    key = fingerprint.hash_key()
    now = _now()

    entry = kb.entries.get(key)
    if entry is None:
        entry = builtin_for(kb, fingerprint)
    if entry is not None:
        entry.sightings += 1
        kb.pending_analysis.pop(key, None)  # known fingerprints are never pending
        return None

    pending = kb.pending_analysis.get(key)
    if pending is not None:
        pending.sightings += 1
        pending.last_seen = now
        if pending.sightings >= config.min_sightings:
            return pending.context.copy()
        return None

    if len(kb.pending_analysis) >= config.max_pending:
        return None  # queue full, drop

    kb.pending_analysis[key] = PendingEntry(
        fingerprint=fingerprint,
        sightings=1,
        first_seen=now,
        last_seen=now,
        context=context.copy(),
    )
    return None


def store_result(
    kb: KnowledgeBase,
    fingerprint: ProcessFingerprint,
    response: IcaAnalysisResponse,
    source: KnowledgeSource,
) -> KnowledgeEntry:
    """Turn an analysis result into a knowledge entry, consuming the pending entry if any."""
    key = fingerprint.hash_key()
    pending = kb.pending_analysis.pop(key, None)
    sightings = pending.sightings if pending is not None else 1

    entry = KnowledgeEntry(
        fingerprint=fingerprint,
        display_name=response.display_name,
        description=response.description,
        category=response.category,
        group_id=response.group_hint,
        confidence=response.confidence,
        source=source,
        sightings=sightings,
        updated_at=_now(),
    )
    kb.entries[key] = entry
    return entry


def builtin_for(kb: KnowledgeBase, fingerprint: ProcessFingerprint) -> KnowledgeEntry | None:
    """The builtin entry covering a bare command seen on some port, if there is one."""
    if fingerprint.project_hash or fingerprint.container_prefix:
        return None
    entry = kb.entries.get(ProcessFingerprint(fingerprint.command).hash_key())
    if entry is not None and entry.source is KnowledgeSource.BUILTIN:
        return entry
    return None


def lookup_entry(kb: KnowledgeBase, fingerprint: ProcessFingerprint) -> KnowledgeEntry | None:
    return kb.entries.get(fingerprint.hash_key())


def lookup_display_name(kb: KnowledgeBase, fingerprint: ProcessFingerprint) -> str | None:
    entry = lookup_entry(kb, fingerprint)
    return entry.display_name if entry is not None else None


def cleanup_stale_pending(kb: KnowledgeBase, max_age_secs: int) -> int:
    """Drop pending entries last seen before now - max_age_secs. Returns how many went."""
    cutoff = _now() - int(max_age_secs)
    stale = [key for key, p in kb.pending_analysis.items() if p.last_seen < cutoff]
    for key in stale:
        del kb.pending_analysis[key]
    return len(stale)
