"""
Tests for agent.context_gatherer - context enrichment
Tests the parsers for mdls and docker output and the enrichment steps with mocked tools.
"""

from __future__ import annotations

import json
import subprocess
from unittest.mock import Mock, patch

import psutil
import pytest

from agent import context_gatherer as cg
from knowledge.types import AnalysisContext


class TestExtractExecutablePath:
    """Tests for extract_executable_path"""

    @pytest.mark.parametrize(
        "cmd, expected",
        [
            ("/usr/local/bin/node server.js", "/usr/local/bin/node"),
            ('"/Applications/My App.app/Contents/MacOS/My App" --flag', "/Applications/My App.app/Contents/MacOS/My App"),
            ("node server.js", None),
            ("", None),
        ],
    )
    def test_extract(self, cmd, expected):
        """Test quoted, unquoted and bare commands"""
        assert cg.extract_executable_path(cmd) == expected


class TestExtractAppBundlePath:
    """Tests for extract_app_bundle_path"""

    def test_inside_bundle(self):
        """Test a binary inside an app bundle"""
        path = "/Applications/Slack.app/Contents/MacOS/Slack"
        assert cg.extract_app_bundle_path(path) == "/Applications/Slack.app"

    def test_bundle_itself(self):
        """Test a path that is the bundle"""
        assert cg.extract_app_bundle_path("/Applications/Slack.app") == "/Applications/Slack.app"

    def test_not_a_bundle(self):
        """Test a plain binary"""
        assert cg.extract_app_bundle_path("/usr/bin/python3") is None


class TestParseMdlsLine:
    """Tests for parse_mdls_line"""

    def test_quoted_value(self):
        """Test that surrounding quotes are removed"""
        assert cg.parse_mdls_line('kMDItemDisplayName = "Control Center"') == (
            "kMDItemDisplayName",
            "Control Center",
        )

    def test_null_value(self):
        """Test that (null) means no value"""
        assert cg.parse_mdls_line("kMDItemKind = (null)") is None

    def test_not_a_pair(self):
        """Test that unrelated lines are skipped"""
        assert cg.parse_mdls_line("garbage") is None


class TestParseDockerConfig:
    """Tests for parse_docker_config"""

    def test_workdir_and_cmd(self):
        """Test the usual output"""
        assert cg.parse_docker_config("/app|[npm run dev]\n") == ("/app", "npm run dev")

    def test_empty_cmd(self):
        """Test an empty command list"""
        assert cg.parse_docker_config("/app|[]") == ("/app", None)

    def test_empty_workdir(self):
        """Test an image without a workdir"""
        assert cg.parse_docker_config("|[postgres]") == (None, "postgres")


class TestEnrichFromPid:
    """Tests for enrich_from_pid"""

    def test_fills_fields(self):
        """Test that cmdline, exe and cwd are copied into the context"""
        proc = Mock()
        proc.cmdline.return_value = ["/usr/bin/node", "server.js"]
        proc.exe.return_value = "/usr/bin/node"
        proc.cwd.return_value = "/home/dev/projects/dss"
        ctx = AnalysisContext(command="node", pid=42)

        with patch("agent.context_gatherer.psutil.Process", return_value=proc):
            cg.enrich_from_pid(ctx, 42)

        assert ctx.full_command == "/usr/bin/node server.js"
        assert ctx.executable_path == "/usr/bin/node"
        assert ctx.working_directory == "/home/dev/projects/dss"

    def test_access_denied_falls_back_to_cmdline(self):
        """Test that a denied exe lookup uses the first cmdline token"""
        proc = Mock()
        proc.cmdline.return_value = ["/opt/bin/thing", "--serve"]
        proc.exe.side_effect = psutil.AccessDenied(pid=42)
        proc.cwd.side_effect = psutil.AccessDenied(pid=42)
        ctx = AnalysisContext(command="thing", pid=42)

        with patch("agent.context_gatherer.psutil.Process", return_value=proc):
            cg.enrich_from_pid(ctx, 42)

        assert ctx.executable_path == "/opt/bin/thing"
        assert ctx.working_directory is None

    def test_vanished_process(self):
        """Test that a gone process leaves the context untouched"""
        ctx = AnalysisContext(command="node", pid=42)
        with patch(
            "agent.context_gatherer.psutil.Process", side_effect=psutil.NoSuchProcess(pid=42)
        ):
            cg.enrich_from_pid(ctx, 42)
        assert ctx.full_command is None


class TestEnrichFromMacosApp:
    """Tests for enrich_from_macos_app"""

    def test_reads_mdls_on_darwin(self, monkeypatch):
        """Test that display name and kind come from mdls"""
        monkeypatch.setattr(cg.sys, "platform", "darwin")
        out = 'kMDItemDisplayName = "Slack"\nkMDItemKind = "Application"\nkMDItemCFBundleIdentifier = (null)\n'
        ctx = AnalysisContext(command="Slack")
        with patch("agent.context_gatherer._run", return_value=out) as run:
            cg.enrich_from_macos_app(ctx, "/Applications/Slack.app/Contents/MacOS/Slack")
        assert ctx.macos_app_name == "Slack"
        assert ctx.macos_app_kind == "Application"
        assert run.call_args.args[0][-1] == "/Applications/Slack.app"

    def test_skipped_elsewhere(self, monkeypatch):
        """Test that mdls is not called off macOS"""
        monkeypatch.setattr(cg.sys, "platform", "linux")
        ctx = AnalysisContext(command="Slack")
        with patch("agent.context_gatherer._run") as run:
            cg.enrich_from_macos_app(ctx, "/Applications/Slack.app/Contents/MacOS/Slack")
        run.assert_not_called()
        assert ctx.macos_app_name is None


class TestEnrichFromDocker:
    """Tests for enrich_from_docker"""

    def _fake_run(self, labels, config="/app|[npm run dev]"):
        def run(args):
            fmt = args[-1]
            if "Labels" in fmt:
                return json.dumps(labels) + "\n"
            return config + "\n"

        return run

    def test_compose_labels_and_config(self):
        """Test that compose labels, image title and config are read"""
        labels = {
            "com.docker.compose.service": "app",
            "com.docker.compose.project": "dss",
            "org.opencontainers.image.title": "DSS Web",
        }
        ctx = AnalysisContext(command="node", container_name="dss_app")
        with patch("agent.context_gatherer._run", side_effect=self._fake_run(labels)):
            cg.enrich_from_docker(ctx, "dss_app")
        assert ctx.docker_service == "app"
        assert ctx.docker_project == "dss"
        assert ctx.docker_image == "DSS Web"
        assert ctx.docker_workdir == "/app"
        assert ctx.docker_cmd == "npm run dev"

    def test_long_description_is_truncated(self):
        """Test that the image description is cut at 100 chars"""
        labels = {"org.opencontainers.image.description": "d" * 150}
        ctx = AnalysisContext(command="x")
        with patch("agent.context_gatherer._run", side_effect=self._fake_run(labels)):
            cg.enrich_from_docker(ctx, "c")
        assert ctx.docker_image == "d" * 100 + "..."

    def test_null_labels(self):
        """Test a container without labels"""
        ctx = AnalysisContext(command="x")
        with patch("agent.context_gatherer._run", side_effect=self._fake_run(None)):
            cg.enrich_from_docker(ctx, "c")
        assert ctx.docker_service is None
        assert ctx.docker_workdir == "/app"

    def test_docker_missing(self):
        """Test that a missing docker CLI leaves everything unset"""
        ctx = AnalysisContext(command="x")
        with patch("agent.context_gatherer._run", return_value=None):
            cg.enrich_from_docker(ctx, "c")
        assert ctx.docker_image is None
        assert ctx.docker_workdir is None


class TestRun:
    """Tests for the _run helper"""

    def test_returns_stdout(self):
        """Test a successful command"""
        done = subprocess.CompletedProcess(args=[], returncode=0, stdout="hi", stderr="")
        with patch("agent.context_gatherer.subprocess.run", return_value=done):
            assert cg._run(["echo"]) == "hi"

    def test_failure_is_none(self):
        """Test that failures and timeouts give None"""
        done = subprocess.CompletedProcess(args=[], returncode=2, stdout="", stderr="x")
        with patch("agent.context_gatherer.subprocess.run", return_value=done):
            assert cg._run(["false"]) is None
        with patch(
            "agent.context_gatherer.subprocess.run",
            side_effect=subprocess.TimeoutExpired(cmd="x", timeout=5),
        ):
            assert cg._run(["sleep"]) is None


class TestEnrichContext:
    """Tests for enrich_context dispatch"""

    def test_runs_steps_for_present_fields(self):
        """Test that each step runs only when its input exists"""
        ctx = AnalysisContext(command="node", pid=1, container_name="dss_app")
        with patch.object(cg, "enrich_from_pid") as pid_step, patch.object(
            cg, "enrich_from_macos_app"
        ) as mac_step, patch.object(cg, "enrich_from_docker") as docker_step:
            assert cg.enrich_context(ctx) is ctx
        pid_step.assert_called_once_with(ctx, 1)
        mac_step.assert_not_called()  # the mocked pid step set no executable path
        docker_step.assert_called_once_with(ctx, "dss_app")
