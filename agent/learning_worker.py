# SPDX-License-Identifier: GPL-3.0-or-later
"""
goal: background worker that turns analysis requests into analysis results, one at a time.

it is the only place that talks to the remote classifier, so remote calls are globally
serialized. between two remote calls it waits until at least rate_limit_secs have passed since
the previous call finished; the first call after startup does not wait. a request is answered by
the remote classifier when it is available and succeeds, and by the local fallback otherwise, so
every request produces exactly one result. a request that fails outright still gets one, with
no response, so its owner can retry it later.

the worker runs until its request queue is closed with close_requests(). a failing request is
logged and never stops the loop.
"""

from __future__ import annotations  # lets us use string annotations before classes are defined

import logging  # for start/stop, success and fallback messages
import queue  # request and result channels
import threading  # the worker runs on its own thread
import time  # for the rate limiter
from collections.abc import Callable  # type hints for injectable clock/sleep
from dataclasses import dataclass  # for the request/result messages
from typing import Protocol  # structural type for classifier clients

from algorithm.fallback import generate_fallback
from algorithm.ica_client import IcaClient
from knowledge.types import (
    AnalysisContext,
    IcaAnalysisResponse,
    KnowledgeSource,
    LearningConfig,
    ProcessFingerprint,
)

logger = logging.getLogger(__name__)

# put on the request queue to tell the worker there will be no more requests
_CLOSED = object()


class Classifier(Protocol):
    def is_available(self) -> bool: ...

    def analyze(self, context: AnalysisContext) -> IcaAnalysisResponse: ...


@dataclass
class AnalysisRequest:
    fingerprint: ProcessFingerprint
    context: AnalysisContext


@dataclass
class AnalysisResult:
    fingerprint: ProcessFingerprint
    response: IcaAnalysisResponse | None  # None when the request failed outright
    source: KnowledgeSource | None = None

    @property
    def failed(self) -> bool:
        return self.response is None or self.source is None


def close_requests(requests_q: queue.Queue) -> None:
    """Tell the worker reading ``requests_q`` to finish the queued work and exit."""
    requests_q.put(_CLOSED)


class LearningWorker:
    def __init__(
        self,
        config: LearningConfig,
        requests_q: queue.Queue,
        results_q: queue.Queue,
        client: Classifier | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.requests = requests_q  # incoming AnalysisRequest objects (plus the close marker)
        self.results = results_q  # outgoing AnalysisResult objects
        self.client: Classifier = client if client is not None else IcaClient(config)
        self.rate_limit = float(config.rate_limit_secs)  # seconds between remote calls
        self._clock = clock
        self._sleep = sleep
        self._last_call_end: float | None = None  # None until the first remote call finishes

    def _wait_for_slot(self) -> None:
        if self._last_call_end is None:  # first call is free
            return
        elapsed = self._clock() - self._last_call_end
        if elapsed < self.rate_limit:
            self._sleep(self.rate_limit - elapsed)

    def classify(self, context: AnalysisContext) -> tuple[IcaAnalysisResponse, KnowledgeSource]:
        if not self.client.is_available():
            logger.debug("ICA not available, using heuristics for %s", context.command)
            return generate_fallback(context), KnowledgeSource.HEURISTIC

        self._wait_for_slot()
        try:
            response = self.client.analyze(context)
        except Exception as exc:  # any remote failure degrades to the heuristic
            logger.warning("ICA analysis failed for %s: %s, using fallback", context.command, exc)
            return generate_fallback(context), KnowledgeSource.HEURISTIC
        finally:
            self._last_call_end = self._clock()

        logger.info("ICA analysis successful: %s -> %s", context.command, response.display_name)
        return response, KnowledgeSource.API_LEARNED

    def handle(self, request: AnalysisRequest) -> AnalysisResult:
        logger.debug(
            "analyzing process: %s (port: %s)", request.context.command, request.context.port
        )
        response, source = self.classify(request.context)
        return AnalysisResult(fingerprint=request.fingerprint, response=response, source=source)

    def run(self) -> None:
        logger.info("learning worker started (ICA available: %s)", self.client.is_available())
        while True:
            request = self.requests.get()  # blocks while idle
            if request is _CLOSED:
                break
            try:
                result = self.handle(request)
            except Exception:  # keep serving the queue whatever one request does
                logger.exception("learning worker failed on request %r", request)
                if isinstance(request, AnalysisRequest):
                    # still answer, so the owner stops treating it as in flight
                    self.results.put(AnalysisResult(fingerprint=request.fingerprint, response=None))
                continue
            self.results.put(result)
        logger.info("learning worker shutting down")


def spawn_learning_worker(
    config: LearningConfig,
    requests_q: queue.Queue,
    results_q: queue.Queue,
    client: Classifier | None = None,
) -> threading.Thread:
    worker = LearningWorker(config, requests_q, results_q, client=client)
    thread = threading.Thread(target=worker.run, name="learning-worker", daemon=True)
    thread.start()
    return thread
