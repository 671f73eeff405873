# SPDX-License-Identifier: GPL-3.0-or-later
"""
goal: enrich an analysis context with extra descriptive fields before it is sent for analysis.
• with a pid: full command line, executable path and working directory (via psutil)
• with an executable inside a macOS .app bundle: the app's display name and kind (via mdls)
• with a docker container name: compose service/project, image title and the container's
  workdir and command (via docker inspect)

every lookup is best effort. a missing tool, a denied permission or a vanished process simply
leaves the field empty; the classifiers work with whatever is there.
"""

from __future__ import annotations  # lets us use string annotations before classes are defined

import json  # for decoding docker label JSON
import subprocess  # for mdls and docker
import sys  # for checking the platform (mdls is macOS only)

import psutil  # library for getting process information

from knowledge.types import AnalysisContext

COMMAND_TIMEOUT_SECS = 5.0  # upper bound for each external command
IMAGE_DESCRIPTION_LIMIT = 100  # OCI descriptions can be paragraphs long


def _run(args: list[str]) -> str | None:
    # run an external command and return its stdout, or None if it could not run or failed
    try:
        proc = subprocess.run(
            args, capture_output=True, text=True, timeout=COMMAND_TIMEOUT_SECS, check=False
        )
    except (OSError, subprocess.SubprocessError):  # tool not installed or timed out
        return None
    if proc.returncode != 0:  # the tool ran but reported failure
        return None
    return proc.stdout


def enrich_context(ctx: AnalysisContext) -> AnalysisContext:
    """Fill in whatever extra fields we can find for ``ctx`` (in place) and return it."""
    if ctx.pid is not None:
        enrich_from_pid(ctx, ctx.pid)
    if ctx.executable_path:
        enrich_from_macos_app(ctx, ctx.executable_path)
    if ctx.container_name:
        enrich_from_docker(ctx, ctx.container_name)
    return ctx


# process info


def extract_executable_path(full_cmd: str) -> str | None:
    # quoted paths may contain spaces: "/Applications/My App.app/Contents/MacOS/My App" --flag
    if full_cmd.startswith('"'):
        end = full_cmd.find('"', 1)
        if end != -1:
            return full_cmd[1:end]
    parts = full_cmd.split()
    if not parts:
        return None
    path = parts[0]
    return path if "/" in path else None  # a bare "node" is not a path


def enrich_from_pid(ctx: AnalysisContext, pid: int) -> None:
    try:
        proc = psutil.Process(pid)
    except psutil.Error:  # process already gone or not visible
        return

    try:
        cmdline = proc.cmdline()  # full argv
        if cmdline:
            ctx.full_command = " ".join(cmdline)
    except psutil.Error:
        pass  # cmdline is often denied for other users' processes

    if ctx.executable_path is None:
        try:
            ctx.executable_path = proc.exe() or None
        except psutil.Error:
            pass
        if ctx.executable_path is None and ctx.full_command:
            ctx.executable_path = extract_executable_path(ctx.full_command)

    if ctx.working_directory is None:
        try:
            ctx.working_directory = proc.cwd() or None
        except psutil.Error:
            pass


# macOS app bundles


def extract_app_bundle_path(path: str) -> str | None:
    # /Applications/Foo.app/Contents/MacOS/Foo -> /Applications/Foo.app
    pos = path.find(".app/")
    if pos != -1:
        return path[: pos + len(".app")]
    if path.endswith(".app"):
        return path
    return None


def parse_mdls_line(line: str) -> tuple[str, str] | None:
    # format: kMDItemDisplayName = "Control Center"
    key, sep, value = line.partition(" = ")
    if not sep:
        return None
    key = key.strip()
    value = value.strip()
    if value == "(null)":
        return None
    if len(value) >= 2 and value.startswith('"') and value.endswith('"'):
        value = value[1:-1]
    return key, value


def get_macos_app_metadata(app_path: str) -> dict[str, str]:
    out = _run(
        [
            "mdls",
            "-name",
            "kMDItemDisplayName",
            "-name",
            "kMDItemKind",
            "-name",
            "kMDItemCFBundleIdentifier",
            app_path,
        ]
    )
    metadata: dict[str, str] = {}
    for line in (out or "").splitlines():
        parsed = parse_mdls_line(line)
        if parsed is not None:
            metadata[parsed[0]] = parsed[1]
    return metadata


def enrich_from_macos_app(ctx: AnalysisContext, executable_path: str) -> None:
    if sys.platform != "darwin":  # mdls only exists on macOS
        return
    app_path = extract_app_bundle_path(executable_path)
    if app_path is None:
        return
    metadata = get_macos_app_metadata(app_path)
    ctx.macos_app_name = metadata.get("kMDItemDisplayName")
    ctx.macos_app_kind = metadata.get("kMDItemKind")


# docker


def parse_docker_config(output: str) -> tuple[str | None, str | None]:
    # "{{.Config.WorkingDir}}|{{.Config.Cmd}}" renders like "/app|[npm run dev]"
    workdir, _, cmd = output.strip().partition("|")
    workdir_value = workdir or None
    cmd_value = cmd.strip("[]") if cmd and cmd != "[]" else None
    return workdir_value, cmd_value or None


def get_docker_labels(container_name: str) -> dict[str, str]:
    out = _run(["docker", "inspect", container_name, "--format", "{{json .Config.Labels}}"])
    if not out:
        return {}
    try:
        labels = json.loads(out.strip())
    except json.JSONDecodeError:
        return {}
    return labels if isinstance(labels, dict) else {}  # containers without labels print null


def enrich_from_docker(ctx: AnalysisContext, container_name: str) -> None:
    labels = get_docker_labels(container_name)
    if labels:
        ctx.docker_service = labels.get("com.docker.compose.service")
        ctx.docker_project = labels.get("com.docker.compose.project")
        title = labels.get("org.opencontainers.image.title")
        desc = labels.get("org.opencontainers.image.description")
        if title:
            ctx.docker_image = title
        elif desc:
            if len(desc) > IMAGE_DESCRIPTION_LIMIT:
                desc = desc[:IMAGE_DESCRIPTION_LIMIT] + "..."
            ctx.docker_image = desc

    out = _run(
        ["docker", "inspect", container_name, "--format", "{{.Config.WorkingDir}}|{{.Config.Cmd}}"]
    )
    if out is not None:
        ctx.docker_workdir, ctx.docker_cmd = parse_docker_config(out)
