# SPDX-License-Identifier: GPL-3.0-or-later
"""
goal: find processes listening on TCP/UDP ports and turn each one into a sighting: a fingerprint
that identifies it plus the context the classifiers work from. polls at a regular interval and
publishes every sighting to a callback, just like the other agents.

the fingerprint is the process name and port, plus a hash of the working directory when the
process runs from somewhere under the user's home (so "node on 3000 in project A" and "node on
3000 in project B" are different processes), plus the container prefix when the port belongs to
a docker container named like "prefix_service".
"""

from __future__ import annotations  # lets us use string annotations before classes are defined

import hashlib  # for hashing project directories
import logging  # for reporting failed scans
import os  # for basenames
import re  # for parsing docker port mappings
import subprocess  # for docker ps
import threading  # for the stop event type
import time  # for sleeping between scans
from collections.abc import Callable  # type hint for the publish callback
from dataclasses import dataclass  # for the sighting record
from pathlib import Path  # for checking whether a cwd is under the home directory

import psutil  # library for getting process and network information

from knowledge.types import AnalysisContext, ProcessFingerprint

logger = logging.getLogger(__name__)

PROJECT_HASH_LEN = 12  # hex chars kept from the project directory hash
DOCKER_TIMEOUT_SECS = 5.0

_HOST_PORT = re.compile(r":(\d+)->")  # "0.0.0.0:5432->5432/tcp" -> 5432


@dataclass
class Sighting:
    fingerprint: ProcessFingerprint
    context: AnalysisContext


# type alias for the publish callback, takes a sighting and returns nothing
PublishFn = Callable[[Sighting], object]


def _home() -> Path:
    return Path.home()


def project_dir(cwd: str | None) -> str | None:
    # only directories below the home directory count as projects (not "/", not "~" itself)
    if not cwd:
        return None
    try:
        path = Path(cwd).resolve()
        home = _home().resolve()
    except OSError:
        return None
    if path == home or home not in path.parents:
        return None
    return str(path)


def project_hash_for(directory: str) -> str:
    return hashlib.sha256(directory.encode("utf-8")).hexdigest()[:PROJECT_HASH_LEN]


def container_prefix_for(container_name: str) -> str | None:
    # "dss_app" -> "dss"; names without an underscore have no prefix
    prefix, sep, rest = container_name.partition("_")
    if not sep or not prefix or not rest:
        return None
    return prefix


def parse_docker_ps(output: str) -> dict[int, str]:
    # lines look like "dss_app|0.0.0.0:3001->3000/tcp, :::3001->3000/tcp"
    ports: dict[int, str] = {}
    for line in output.splitlines():
        name, sep, mapping = line.strip().partition("|")
        if not sep or not name:
            continue
        for match in _HOST_PORT.finditer(mapping):
            ports[int(match.group(1))] = name
    return ports


def build_sighting(
    command: str,
    port: int,
    pid: int | None = None,
    cwd: str | None = None,
    container_name: str | None = None,
) -> Sighting:
    fp = ProcessFingerprint(command).with_port(port)
    ctx = AnalysisContext(command=command, port=port, pid=pid, working_directory=cwd)

    project = project_dir(cwd)
    if project is not None:
        fp = fp.with_project_hash(project_hash_for(project))
        ctx.project_name = os.path.basename(project)

    if container_name:
        ctx.container_name = container_name
        prefix = container_prefix_for(container_name)
        if prefix is not None:
            fp = fp.with_container_prefix(prefix)
            ctx.container_prefix = prefix

    return Sighting(fingerprint=fp, context=ctx)


class PortScanner:
    """polls listening sockets and publishes one sighting per (process, port)"""

    def __init__(self, interval_sec: float = 5.0, docker: bool = True) -> None:
        self.interval = interval_sec  # how many seconds to wait between scans
        self.docker = docker  # whether to ask docker which container owns a port

    def _docker_ports(self) -> dict[int, str]:
        if not self.docker:
            return {}
        try:
            proc = subprocess.run(
                ["docker", "ps", "--format", "{{.Names}}|{{.Ports}}"],
                capture_output=True,
                text=True,
                timeout=DOCKER_TIMEOUT_SECS,
                check=False,
            )
        except (OSError, subprocess.SubprocessError):  # docker not installed or not responding
            return {}
        if proc.returncode != 0:
            return {}
        return parse_docker_ps(proc.stdout)

    def _listeners(self) -> list[tuple[int, int]]:
        # (pid, port) for every listening socket we can see
        found: list[tuple[int, int]] = []
        try:
            for c in psutil.net_connections(kind="inet"):
                if c.status == psutil.CONN_LISTEN and c.pid is not None and c.laddr:
                    found.append((c.pid, c.laddr.port))
            return found
        except psutil.AccessDenied:
            pass  # system-wide listing needs root on macOS, fall back to per-process

        for p in psutil.process_iter(attrs=[]):
            try:
                for c in p.net_connections(kind="inet"):
                    if c.status == psutil.CONN_LISTEN and c.laddr:
                        found.append((p.pid, c.laddr.port))
            except psutil.Error:  # process vanished or belongs to someone else
                continue
        return found

    def scan(self) -> list[Sighting]:
        containers = self._docker_ports()
        sightings: list[Sighting] = []
        seen: set[tuple[int, int]] = set()
        for pid, port in self._listeners():
            if (pid, port) in seen:  # IPv4 and IPv6 sockets for the same port
                continue
            seen.add((pid, port))
            try:
                proc = psutil.Process(pid)
                name = proc.name()
            except psutil.Error:
                continue
            try:
                cwd = proc.cwd()
            except psutil.Error:
                cwd = None
            sightings.append(
                build_sighting(name, port, pid=pid, cwd=cwd, container_name=containers.get(port))
            )
        return sightings

    def run(self, publish: PublishFn, stop: threading.Event | None = None) -> None:
        while stop is None or not stop.is_set():
            try:
                for sighting in self.scan():
                    publish(sighting)
            except Exception:  # one bad scan must not end the loop
                logger.exception("port scan failed")
            if stop is not None:
                stop.wait(self.interval)
            else:
                time.sleep(self.interval)
