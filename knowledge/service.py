# SPDX-License-Identifier: GPL-3.0-or-later
"""
goal: single owner of the in-memory knowledge base while the app runs. the scanner thread feeds it
sightings, the learning worker answers analysis requests through a result queue, and the console
loop and dashboard read from it. every read and write of the knowledge base goes through one lock.

flow for one fingerprint
1. observe() records the sighting. when the fingerprint is promoted it is enriched (outside the
   lock, enrichment runs subprocesses) and queued for the worker, unless a request for it is
   already in flight.
2. the worker classifies it and puts an AnalysisResult on the result queue.
3. drain_results() stores each result as a knowledge entry and clears the in-flight mark. a
   result without a response only clears the mark, leaving the fingerprint pending.

with learning disabled there is no worker: promoted fingerprints are labelled right away by the
local fallback classifier.
"""

from __future__ import annotations

import logging
import queue
import threading
from collections.abc import Callable
from dataclasses import replace
from pathlib import Path

from agent.learning_worker import (
    AnalysisRequest,
    AnalysisResult,
    Classifier,
    close_requests,
    spawn_learning_worker,
)
from algorithm.fallback import generate_fallback
from knowledge.learning import (
    cleanup_stale_pending,
    lookup_entry,
    record_sighting,
    store_result,
)
from knowledge.storage import save_knowledge_base
from knowledge.types import (
    AnalysisContext,
    KnowledgeBase,
    KnowledgeEntry,
    KnowledgeSource,
    LearningConfig,
    PendingEntry,
    ProcessFingerprint,
)

logger = logging.getLogger(__name__)

EnrichFn = Callable[[AnalysisContext], AnalysisContext]


class KnowledgeService:
    def __init__(
        self,
        kb: KnowledgeBase,
        config: LearningConfig,
        path: str | Path | None = None,
        client: Classifier | None = None,
        enrich: EnrichFn | None = None,
    ) -> None:
        self.kb = kb
        self.config = config
        self.path = path  # None means the default knowledge file
        self.requests: queue.Queue = queue.Queue()  # AnalysisRequest -> worker
        self.results: queue.Queue = queue.Queue()  # AnalysisResult <- worker
        self._client = client
        self._enrich = enrich
        self._lock = threading.Lock()
        self._in_flight: set[str] = set()  # hash keys queued but not stored yet
        self._dirty = False
        self._worker: threading.Thread | None = None

    # sightings

    def observe(self, fingerprint: ProcessFingerprint, context: AnalysisContext) -> bool:
        """Record a sighting. Returns True when it led to an analysis (queued or done inline)."""
        key = fingerprint.hash_key()
        with self._lock:
            promoted = record_sighting(self.kb, fingerprint, context, self.config)
            self._dirty = True
            if promoted is None or key in self._in_flight:
                return False
            self._in_flight.add(key)

        if self._enrich is not None:
            try:
                promoted = self._enrich(promoted)
            except Exception:  # enrichment is best effort, analyze what we have
                logger.exception("context enrichment failed for %s", promoted.command)

        if not self.config.enabled:
            try:
                response = generate_fallback(promoted)
            except Exception:
                with self._lock:
                    self._in_flight.discard(key)
                raise
            with self._lock:
                store_result(self.kb, fingerprint, response, KnowledgeSource.HEURISTIC)
                self._in_flight.discard(key)
            logger.info("labelled %s as %s (learning disabled)", promoted.command, response.display_name)
            return True

        self.requests.put(AnalysisRequest(fingerprint=fingerprint, context=promoted))
        logger.debug("queued %s for analysis", promoted.command)
        return True

    def observe_sighting(self, sighting) -> bool:
        # adapter for PortScanner.run(publish=...)
        return self.observe(sighting.fingerprint, sighting.context)

    def drain_results(self, timeout: float = 0.0) -> list[KnowledgeEntry]:
        """Store every finished analysis. Waits up to ``timeout`` for the first one."""
        stored: list[KnowledgeEntry] = []
        while True:
            try:
                if timeout > 0 and not stored:
                    result: AnalysisResult = self.results.get(timeout=timeout)
                else:
                    result = self.results.get_nowait()
            except queue.Empty:
                break
            with self._lock:
                self._in_flight.discard(result.fingerprint.hash_key())
                if result.failed:
                    continue  # still pending, the next sighting queues it again
                entry = store_result(self.kb, result.fingerprint, result.response, result.source)
                self._dirty = True
            stored.append(entry)
        return stored

    def cleanup(self) -> int:
        with self._lock:
            removed = cleanup_stale_pending(self.kb, self.config.stale_pending_secs)
            if removed:
                self._dirty = True
        if removed:
            logger.info("dropped %d stale pending entries", removed)
        return removed

    def save(self, force: bool = False) -> bool:
        """Write the knowledge base if anything changed since the last save."""
        with self._lock:
            if not self._dirty and not force:
                return False
            save_knowledge_base(self.kb, self.path)
            self._dirty = False
        return True

    # reads

    def lookup(self, fingerprint: ProcessFingerprint) -> KnowledgeEntry | None:
        with self._lock:
            entry = lookup_entry(self.kb, fingerprint)
            return replace(entry) if entry is not None else None

    def resolve(self, fingerprint: ProcessFingerprint) -> KnowledgeEntry | None:
        # exact fingerprint first, then the bare command (builtins are keyed by command only)
        entry = self.lookup(fingerprint)
        if entry is None and fingerprint != ProcessFingerprint(fingerprint.command):
            entry = self.lookup(ProcessFingerprint(fingerprint.command))
        return entry

    def lookup_display_name(self, fingerprint: ProcessFingerprint) -> str | None:
        entry = self.resolve(fingerprint)
        return entry.display_name if entry is not None else None

    def entries(self) -> list[KnowledgeEntry]:
        with self._lock:
            return [replace(e) for e in self.kb.entries.values()]

    def pending(self) -> list[PendingEntry]:
        with self._lock:
            return [replace(p) for p in self.kb.pending_analysis.values()]

    @property
    def in_flight_count(self) -> int:
        with self._lock:
            return len(self._in_flight)

    @property
    def dirty(self) -> bool:
        return self._dirty

    # worker

    def start_worker(self) -> threading.Thread:
        if self._worker is not None and self._worker.is_alive():
            return self._worker
        self._worker = spawn_learning_worker(
            self.config, self.requests, self.results, client=self._client
        )
        return self._worker

    def stop_worker(self, timeout: float | None = 5.0) -> bool:
        """Close the request queue and wait for the worker. True if it has exited."""
        if self._worker is None:
            return True
        close_requests(self.requests)
        self._worker.join(timeout)
        stopped = not self._worker.is_alive()
        if stopped:
            self._worker = None
        else:
            logger.warning("learning worker did not stop within %s seconds", timeout)
        return stopped
