# SPDX-License-Identifier: GPL-3.0-or-later
"""
goal: derive a display name, category and description for a process from its context alone.
no network, no subprocesses, never fails. this is what the learning worker uses whenever the
remote classifier is unavailable or returns something we cannot use, so the UI always gets a label.

how it picks a name (first rule that applies wins)
1. docker container with a known prefix: "dss_app" with prefix "dss" becomes "Dss App", and the
   category is guessed from the service part ("app")
2. docker container without a prefix: the capitalized container name
3. a known project directory: "My Project (node)", category guessed from the command
4. just the command: the capitalized command, category guessed from the command

category guessing is a case-insensitive substring search through an ordered keyword table. the
first bucket with a matching keyword wins, so the order of the tables below matters: "app"
is a frontend keyword and frontend is checked before backend.

every result carries confidence 0.5 and, when the process lives in a prefixed container, the
prefix as its group hint.
"""

from __future__ import annotations  # lets us use string annotations before classes are defined

import re  # for splitting names into words

from knowledge.types import AnalysisContext, IcaAnalysisResponse, ProcessCategory

FALLBACK_CONFIDENCE = 0.5

C = ProcessCategory

# keyword tables for container/service names, checked top to bottom
NAME_KEYWORDS: tuple[tuple[ProcessCategory, tuple[str, ...]], ...] = (
    (C.DATABASE, ("postgres", "mysql", "mongo", "db", "database")),
    (C.CACHE, ("redis", "memcache", "cache")),
    (C.PROXY, ("nginx", "proxy", "gateway", "lb", "loadbalancer")),
    (C.FRONTEND, ("frontend", "web", "ui", "client", "app")),
    (C.BACKEND, ("api", "backend", "server", "service")),
    (C.INFRASTRUCTURE, ("worker", "queue", "scheduler", "cron")),
)

# keyword tables for bare commands, checked top to bottom
COMMAND_KEYWORDS: tuple[tuple[ProcessCategory, tuple[str, ...]], ...] = (
    (C.DATABASE, ("postgres", "mysql", "mongo", "redis")),
    (C.FRONTEND, ("vite", "webpack", "parcel", "next", "remix")),
    (C.BACKEND, ("node", "python", "ruby", "go", "java", "php", "bun", "deno")),
    (C.PROXY, ("nginx", "caddy", "httpd")),
    (C.INFRASTRUCTURE, ("docker", "orbstack")),
)

_WORD_SPLIT = re.compile(r"[_\- ]")  # underscores, dashes and spaces separate words


def capitalize_words(s: str) -> str:
    # "dss_app" -> "Dss App", "my-project" -> "My Project"; only the first letter of each word changes
    words = [w for w in _WORD_SPLIT.split(s) if w]  # drop empty pieces from doubled separators
    return " ".join(w[0].upper() + w[1:] for w in words)


def _match_keywords(
    value: str, table: tuple[tuple[ProcessCategory, tuple[str, ...]], ...]
) -> ProcessCategory:
    lower = value.lower()  # keyword search ignores case
    for category, keywords in table:  # buckets in priority order
        if any(k in lower for k in keywords):  # substring match, so "redis-cache" hits "redis"
            return category
    return ProcessCategory.UNKNOWN


def infer_category_from_name(name: str) -> ProcessCategory:
    return _match_keywords(name, NAME_KEYWORDS)


def infer_category_from_command(command: str) -> ProcessCategory:
    return _match_keywords(command, COMMAND_KEYWORDS)


def analyze_context(context: AnalysisContext) -> tuple[str, ProcessCategory, str]:
    """Return (display_name, category, description) following the rules in the module docstring."""
    command = context.command

    # 1) container with prefix: "dss_app" -> service "app"
    if context.container_prefix and context.container_name:
        prefix = context.container_prefix
        container = context.container_name
        service = container.removeprefix(f"{prefix}_")  # unprefixed names are used whole
        prefix_title = capitalize_words(prefix)
        name = f"{prefix_title} {capitalize_words(service)}"
        return name, infer_category_from_name(service), f"{prefix_title} {service} service"

    # 2) container without a prefix
    if context.container_name:
        container = context.container_name
        return (
            capitalize_words(container),
            infer_category_from_name(container),
            f"Docker container: {container}",
        )

    # 3) project directory + command
    if context.project_name:
        project = context.project_name
        return (
            f"{capitalize_words(project)} ({command})",
            infer_category_from_command(command),
            f"{command} running in project {project}",
        )

    # 4) just the command
    return capitalize_words(command), infer_category_from_command(command), f"{command} process"


def generate_fallback(context: AnalysisContext) -> IcaAnalysisResponse:
    display_name, category, description = analyze_context(context)
    return IcaAnalysisResponse(
        display_name=display_name,
        description=description,
        category=category,
        group_hint=context.container_prefix,
        confidence=FALLBACK_CONFIDENCE,
    )
