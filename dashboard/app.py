# SPDX-License-Identifier: GPL-3.0-or-later
"""
goal: small local JSON API over the knowledge service, so other tools (a menu bar app, a shell
prompt, a browser tab) can ask "what is the thing on port 3000?" without scanning themselves.

endpoints
- GET  /api/ping               drains finished analyses, reports counts
- GET  /api/knowledge          every knowledge entry, optional ?category= and ?q= filters
- GET  /api/knowledge/lookup   best entry for ?command=&port=&project_hash=&container_prefix=
- GET  /api/pending            processes seen but not classified yet
- POST /api/sightings          report a sighting from outside the scanner

errors come back as {"ok": false, "error": "..."} with a 4xx status. served by waitress, bound
to localhost by default.
"""

from __future__ import annotations

import logging
from typing import Any, cast

from flask import Flask, jsonify, request
from waitress import serve

from knowledge.service import KnowledgeService
from knowledge.types import AnalysisContext, ProcessCategory, ProcessFingerprint

logger = logging.getLogger(__name__)


def _bad_request(message: str):
    return jsonify({"ok": False, "error": message}), 400


def _parse_port(raw: Any) -> int | None:
    # raises ValueError for anything that is not a valid port
    if raw is None or raw == "":
        return None
    if isinstance(raw, bool):
        raise ValueError("port must be an integer")
    port = int(raw)
    if not 0 <= port <= 65535:
        raise ValueError("port out of range")
    return port


def build_app(service: KnowledgeService) -> Flask:
    app = Flask(__name__)

    @app.get("/api/ping")
    def ping():
        """lightweight drain trigger so learned results show up even without the console loop"""
        drained = service.drain_results()
        return jsonify(
            {
                "ok": True,
                "drained": len(drained),
                "entries": len(service.entries()),
                "pending": len(service.pending()),
                "in_flight": service.in_flight_count,
            }
        )

    @app.get("/api/knowledge")
    def knowledge():
        service.drain_results()
        category = (request.args.get("category") or "").lower().strip()
        q = (request.args.get("q") or "").lower().strip()
        if category:
            try:
                ProcessCategory(category)
            except ValueError:
                return _bad_request(f"unknown category {category!r}")

        out = []
        for entry in service.entries():
            if category and entry.category.value != category:
                continue
            if q:
                haystack = f"{entry.display_name} {entry.description} {entry.fingerprint.command}"
                if q not in haystack.lower():
                    continue
            out.append(entry.to_dict())
        out.sort(key=lambda e: e["display_name"].lower())
        return jsonify({"ok": True, "entries": out})

    @app.get("/api/knowledge/lookup")
    def lookup():
        command = (request.args.get("command") or "").strip()
        if not command:
            return _bad_request("missing command")
        try:
            port = _parse_port(request.args.get("port"))
        except ValueError:
            return _bad_request("invalid port")

        fp = ProcessFingerprint(
            command=command,
            default_port=port,
            project_hash=request.args.get("project_hash") or None,
            container_prefix=request.args.get("container_prefix") or None,
        )
        entry = service.resolve(fp)
        if entry is None:
            return jsonify({"ok": False, "error": "unknown process", "key": fp.hash_key()}), 404
        return jsonify({"ok": True, "key": fp.hash_key(), "entry": entry.to_dict()})

    @app.get("/api/pending")
    def pending():
        items = [p.to_dict() for p in service.pending()]
        items.sort(key=lambda p: p["last_seen"], reverse=True)
        return jsonify({"ok": True, "pending": items})

    @app.post("/api/sightings")
    def sightings():
        body = request.get_json(silent=True)
        if not isinstance(body, dict):
            return _bad_request("expected a JSON object")
        body = cast(dict[str, Any], body)

        command = body.get("command")
        if not isinstance(command, str) or not command.strip():
            return _bad_request("missing command")
        try:
            port = _parse_port(body.get("port"))
        except (TypeError, ValueError):
            return _bad_request("invalid port")

        fp = ProcessFingerprint(command.strip())
        if port is not None:
            fp = fp.with_port(port)
        if body.get("project_hash"):
            fp = fp.with_project_hash(str(body["project_hash"]))
        if body.get("container_prefix"):
            fp = fp.with_container_prefix(str(body["container_prefix"]))

        extra = body.get("context") or {}
        if not isinstance(extra, dict):
            return _bad_request("context must be an object")
        try:
            ctx = AnalysisContext.from_dict({**extra, "command": fp.command, "port": port})
        except (TypeError, ValueError):
            return _bad_request("invalid context")
        if fp.container_prefix and ctx.container_prefix is None:
            ctx.container_prefix = fp.container_prefix

        queued = service.observe(fp, ctx)
        return jsonify({"ok": True, "key": fp.hash_key(), "queued": queued})

    return app


# run the dashboard: serve the Flask app with waitress
def run_dashboard(service: KnowledgeService, host: str = "127.0.0.1", port: int = 8766) -> None:
    app = build_app(service)
    logger.info("dashboard listening on http://%s:%d", host, port)
    try:
        serve(app, host=host, port=port)
    except (SystemExit, KeyboardInterrupt):
        pass  # expected when shutting down
