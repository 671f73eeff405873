# SPDX-License-Identifier: GPL-3.0-or-later
"""
goal: ask the ICA chat service to classify a process and pull a structured answer out of its reply.

how a call works
1. the service key comes from the setec secret store (or straight from config). it is fetched at
   most once per ServiceKeyCache; the application creates one cache and hands it to the client.
2. the process context is rendered into a prompt that asks for exactly five JSON fields.
3. the prompt is POSTed to {ica_url}/api/v1/chat/stateless with a bounded timeout.
4. the reply is free text from a language model. it usually is the JSON object, but it may be
   wrapped in prose or a ```json fence, so extract_json scans for the object with a brace counter
   that understands string literals and escapes.
5. the extracted object must have the expected fields with the expected types. anything else is
   an error, and the caller falls back to the local heuristic.

errors are raised, never swallowed here: the learning worker decides what to do with them.
"""

from __future__ import annotations  # lets us use string annotations before classes are defined

import json  # for parsing the model's JSON answer
import logging  # for reporting key lookups and calls
import math  # for rejecting NaN/inf confidences
import subprocess  # for invoking the setec CLI
import threading  # for the compute-once key cache
from collections.abc import Callable  # type hint for the key fetcher
from typing import Any  # type hint for decoded JSON values

import requests  # HTTP client for the ICA API

from knowledge.types import (
    AnalysisContext,
    IcaAnalysisResponse,
    LearningConfig,
    ProcessCategory,
)

logger = logging.getLogger(__name__)

SERVICE_KEY_SECRET = "ica/service-key"  # name of the secret in setec
CHAT_ENDPOINT = "/api/v1/chat/stateless"
SETEC_TIMEOUT_SECS = 10.0

ANALYSIS_PROMPT = """Analyze this development process and return ONLY valid JSON (no markdown, no explanation):

{context}

Return a JSON object with these exact fields:
{{
  "display_name": "Human-friendly name for this process (e.g., 'DSS Backend API', 'Vite Dev Server')",
  "description": "Brief description of what this process does (1-2 sentences)",
  "category": "One of: frontend, backend, database, cache, proxy, dev_tool, infrastructure, unknown",
  "group_hint": "Optional group name if this seems related to a stack (e.g., 'DSS Stack'), or null",
  "confidence": 0.0-1.0 representing how confident you are in this analysis
}}

Focus on identifying:
- What the service does
- Whether it's part of a larger application stack
- The appropriate category

Return ONLY the JSON object, nothing else."""


class IcaError(Exception):
    """Base class for everything that can go wrong while classifying remotely."""


class IcaRequestError(IcaError):
    """Transport, HTTP status, timeout or envelope decoding problem."""


class NoJsonFoundError(IcaError):
    """The model's reply did not contain a JSON object."""


class ResponseSchemaError(IcaError):
    """The JSON object did not have the expected fields or types."""


# service key


def fetch_service_key_from_setec(setec_url: str) -> str | None:
    """Run ``setec -s URL get ica/service-key``; returns the trimmed key or None."""
    try:
        proc = subprocess.run(
            ["setec", "-s", setec_url, "get", SERVICE_KEY_SECRET],
            capture_output=True,
            text=True,
            timeout=SETEC_TIMEOUT_SECS,
            check=False,
        )
    except (OSError, subprocess.SubprocessError) as exc:  # setec missing or hung
        logger.warning("could not run setec for the ICA service key: %s", exc)
        return None
    if proc.returncode != 0:
        logger.warning("failed to get ICA service key from setec: %s", proc.stderr.strip())
        return None
    key = proc.stdout.strip()
    if not key:
        logger.warning("ICA service key from setec is empty")
        return None
    logger.info("retrieved ICA service key from setec")
    return key


class ServiceKeyCache:
    """Compute-once holder for the service key. The first caller fetches, everyone else waits
    on the lock and then reads the same value (which may be None)."""

    def __init__(self, fetch: Callable[[], str | None]) -> None:
        self._fetch = fetch
        self._lock = threading.Lock()
        self._loaded = False
        self._value: str | None = None

    @classmethod
    def for_config(cls, config: LearningConfig) -> ServiceKeyCache:
        if config.service_key:
            key = config.service_key
            return cls(lambda: key)
        setec_url = config.setec_url
        return cls(lambda: fetch_service_key_from_setec(setec_url))

    def get(self) -> str | None:
        if self._loaded:
            return self._value
        with self._lock:
            if not self._loaded:
                self._value = self._fetch()
                self._loaded = True
        return self._value


# prompt


def build_analysis_prompt(context: AnalysisContext) -> str:
    return ANALYSIS_PROMPT.format(context=context.to_prompt())


# JSON extraction


def find_matching_brace(s: str) -> int | None:
    """Index of the brace closing the one at s[0], ignoring braces inside string literals."""
    depth = 0
    in_string = False
    escape_next = False
    for i, ch in enumerate(s):
        if escape_next:  # character after a backslash inside a string is literal
            escape_next = False
            continue
        if ch == "\\" and in_string:
            escape_next = True
        elif ch == '"':
            in_string = not in_string
        elif ch == "{" and not in_string:
            depth += 1
        elif ch == "}" and not in_string:
            depth -= 1
            if depth == 0:
                return i
    return None


def extract_json(text: str) -> str:
    trimmed = text.strip()

    # 1) the reply is the object, maybe with trailing chatter
    if trimmed.startswith("{"):
        end = find_matching_brace(trimmed)
        if end is not None:
            return trimmed[: end + 1]

    # 2) a ```json fenced block
    fence = trimmed.find("```json")
    if fence != -1:
        body_start = fence + len("```json")
        close = trimmed.find("```", body_start)
        if close != -1:
            body = trimmed[body_start:close].strip()
            if body:
                return body

    # 3) the first balanced object anywhere
    start = trimmed.find("{")
    if start != -1:
        end = find_matching_brace(trimmed[start:])
        if end is not None:
            return trimmed[start : start + end + 1]

    preview = trimmed if len(trimmed) <= 120 else trimmed[:120] + "..."
    raise NoJsonFoundError(f"no valid JSON found in response: {preview!r}")


def _require_str(data: dict[str, Any], key: str) -> str:
    value = data.get(key)
    if not isinstance(value, str):
        raise ResponseSchemaError(f"field {key!r} must be a string, got {type(value).__name__}")
    return value


def response_from_dict(data: Any) -> IcaAnalysisResponse:
    if not isinstance(data, dict):
        raise ResponseSchemaError(f"expected a JSON object, got {type(data).__name__}")

    display_name = _require_str(data, "display_name")
    description = _require_str(data, "description")

    raw_category = _require_str(data, "category")
    try:
        category = ProcessCategory(raw_category)
    except ValueError as exc:
        raise ResponseSchemaError(f"unknown category {raw_category!r}") from exc

    group_hint = data.get("group_hint")
    if group_hint is not None and not isinstance(group_hint, str):
        raise ResponseSchemaError("field 'group_hint' must be a string or null")

    confidence = data.get("confidence")
    if isinstance(confidence, bool) or not isinstance(confidence, (int, float)):
        raise ResponseSchemaError("field 'confidence' must be a number")
    if not math.isfinite(confidence):
        raise ResponseSchemaError("field 'confidence' must be finite")

    return IcaAnalysisResponse(
        display_name=display_name,
        description=description,
        category=category,
        group_hint=group_hint,
        confidence=max(0.0, min(1.0, float(confidence))),
    )


def parse_analysis_response(text: str) -> IcaAnalysisResponse:
    raw = extract_json(text)
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ResponseSchemaError(f"failed to parse JSON from response: {exc}") from exc
    return response_from_dict(data)


# client


class IcaClient:
    """Stateless chat client for process analysis."""

    def __init__(
        self,
        config: LearningConfig,
        key_cache: ServiceKeyCache | None = None,
        session: requests.Session | None = None,
    ) -> None:
        self.ica_url = config.ica_url.rstrip("/")
        self.service_name = config.service_name
        self.timeout = float(config.request_timeout_secs)
        self._keys = key_cache if key_cache is not None else ServiceKeyCache.for_config(config)
        self._session = session if session is not None else requests.Session()

    def is_available(self) -> bool:
        return self._keys.get() is not None

    def analyze(self, context: AnalysisContext) -> IcaAnalysisResponse:
        service_key = self._keys.get()
        if service_key is None:
            raise IcaRequestError("ICA service key not available")

        url = f"{self.ica_url}{CHAT_ENDPOINT}"
        headers = {
            "Content-Type": "application/json",
            "X-ICA-Service-Key": service_key,
            "X-ICA-Service-Name": self.service_name,
        }
        logger.debug("calling ICA at %s for %s", url, context.command)
        try:
            resp = self._session.post(
                url,
                json={"message": build_analysis_prompt(context)},
                headers=headers,
                timeout=self.timeout,
            )
            resp.raise_for_status()
            body = resp.json()
        except requests.RequestException as exc:
            raise IcaRequestError(f"failed to call ICA API: {exc}") from exc
        except ValueError as exc:
            raise IcaRequestError("failed to decode ICA response body") from exc

        # envelope is {"response": str, "sessionId": str}; the session id is not used
        if not isinstance(body, dict) or not isinstance(body.get("sessionId"), str):
            raise IcaRequestError("ICA response envelope is missing sessionId")
        text = body.get("response")
        if not isinstance(text, str):
            raise IcaRequestError("ICA response has no 'response' text")
        return parse_analysis_response(text)
