# SPDX-License-Identifier: GPL-3.0-or-later
"""
goal: seed a brand-new knowledge base with well-known developer processes (databases, caches,
proxies, language runtimes, bundlers, container tooling) so common commands get a good label
from the very first sighting without any analysis.
"""

from __future__ import annotations

import time

from knowledge.types import (
    KnowledgeBase,
    KnowledgeEntry,
    KnowledgeSource,
    ProcessCategory,
    ProcessFingerprint,
)

C = ProcessCategory

# (command, display name, description, category)
BUILTIN_CATALOG: tuple[tuple[str, str, str, ProcessCategory], ...] = (
    # container tooling
    ("com.docker.backend", "Docker Desktop", "Docker container runtime and management", C.INFRASTRUCTURE),
    ("orbstack", "OrbStack", "Fast Docker and Linux VM runtime for macOS", C.INFRASTRUCTURE),
    ("OrbStack Helper", "OrbStack Helper", "OrbStack background service", C.INFRASTRUCTURE),
    # databases and caches
    ("postgres", "PostgreSQL Database", "PostgreSQL relational database server", C.DATABASE),
    ("mysqld", "MySQL Database", "MySQL relational database server", C.DATABASE),
    ("mongod", "MongoDB", "MongoDB NoSQL document database", C.DATABASE),
    ("redis-server", "Redis Cache", "Redis in-memory data structure store", C.CACHE),
    ("memcached", "Memcached", "Distributed memory object caching system", C.CACHE),
    # web servers
    ("nginx", "NGINX", "High-performance web server and reverse proxy", C.PROXY),
    ("httpd", "Apache HTTP Server", "Apache web server", C.PROXY),
    ("caddy", "Caddy", "Modern web server with automatic HTTPS", C.PROXY),
    # javascript runtimes
    ("node", "Node.js Server", "Node.js JavaScript runtime", C.BACKEND),
    ("bun", "Bun Server", "Bun JavaScript runtime and bundler", C.BACKEND),
    ("deno", "Deno Server", "Deno secure JavaScript/TypeScript runtime", C.BACKEND),
    # python
    ("python", "Python Server", "Python application server", C.BACKEND),
    ("python3", "Python 3 Server", "Python 3 application server", C.BACKEND),
    ("uvicorn", "Uvicorn (ASGI)", "Lightning-fast ASGI server for Python", C.BACKEND),
    ("gunicorn", "Gunicorn (WSGI)", "Python WSGI HTTP server", C.BACKEND),
    # ruby
    ("ruby", "Ruby Server", "Ruby application server", C.BACKEND),
    ("puma", "Puma", "Concurrent web server for Ruby/Rails", C.BACKEND),
    # go, java, rust, php
    ("go", "Go Server", "Go application server", C.BACKEND),
    ("golink", "golink", "Tailscale private shortlink service", C.DEV_TOOL),
    ("java", "Java Server", "Java application server", C.BACKEND),
    ("cargo", "Cargo Dev Server", "Rust package manager running a dev server", C.DEV_TOOL),
    ("php", "PHP Server", "PHP application server", C.BACKEND),
    ("php-fpm", "PHP-FPM", "PHP FastCGI Process Manager", C.BACKEND),
    # frontend dev servers and bundlers
    ("vite", "Vite Dev Server", "Next-generation frontend build tool", C.DEV_TOOL),
    ("webpack", "Webpack Dev Server", "JavaScript module bundler dev server", C.DEV_TOOL),
    ("next", "Next.js Dev Server", "React framework development server", C.FRONTEND),
    ("remix", "Remix Dev Server", "Full-stack React framework", C.FRONTEND),
    ("turbo", "Turborepo", "Monorepo build system", C.DEV_TOOL),
    # infrastructure
    ("rabbitmq-server", "RabbitMQ", "Message broker and queue server", C.INFRASTRUCTURE),
    ("tailscaled", "Tailscale Daemon", "Tailscale VPN daemon", C.INFRASTRUCTURE),
    ("brew", "Homebrew", "macOS package manager", C.DEV_TOOL),
)


def builtin_entry(
    command: str,
    display_name: str,
    description: str,
    category: ProcessCategory,
    timestamp: int,
) -> KnowledgeEntry:
    return KnowledgeEntry(
        fingerprint=ProcessFingerprint(command),
        display_name=display_name,
        description=description,
        category=category,
        group_id=None,
        confidence=1.0,
        source=KnowledgeSource.BUILTIN,
        sightings=0,
        updated_at=timestamp,
    )


def populate_builtins(kb: KnowledgeBase) -> int:
    """Insert the catalog into ``kb``; keys that already exist are left alone.

    Returns how many entries were added, so a second run returns 0.
    """
    now = int(time.time())
    added = 0
    for command, display_name, description, category in BUILTIN_CATALOG:
        entry = builtin_entry(command, display_name, description, category, now)
        key = entry.hash_key()
        if key in kb.entries:
            continue
        kb.entries[key] = entry
        added += 1
    return added
