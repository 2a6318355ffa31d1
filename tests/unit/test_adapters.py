"""Tests for tool adapters and the adapter registry."""

import subprocess
import time
from pathlib import Path
from unittest.mock import MagicMock

import pytest

from ticket_operator.adapters import (
    AdapterRegistry,
    CliToolAdapter,
    ToolInvocationError,
    ToolRequest,
    ToolResponse,
    build_default_registry,
    codex_command,
    sanitize_output,
    teddy_command,
)
from ticket_operator.config import CliToolConfig
from ticket_operator.errors import AdapterCoverageError


def request(**overrides):
    fields = {"tool_id": "tool.code.codex.exec", "name": "code", "prompt": "Fix it", "cwd": "/wt"}
    fields.update(overrides)
    return ToolRequest(**fields)


@pytest.fixture
def fake_run(monkeypatch):
    run = MagicMock(return_value=subprocess.CompletedProcess([], 0, stdout="done\n", stderr=""))
    monkeypatch.setattr(subprocess, "run", run)
    return run


class TestAdapterRegistry:
    def test_default_registry_covers_packaged_policies(self, policies, operator_config):
        registry = build_default_registry(operator_config)

        registry.check_coverage(policies)
        assert registry.missing_for(policies) == []

    def test_missing_tools_are_listed(self, policies):
        registry = AdapterRegistry()
        registry.register("tool.code.codex.exec", lambda r: ToolResponse("ok"))

        with pytest.raises(AdapterCoverageError) as exc_info:
            registry.check_coverage(policies)

        missing = exc_info.value.missing
        assert "tool.code.codex.exec" not in missing
        assert "tool.discovery.teddy.default" in missing
        assert len(missing) == len(set(missing))


class TestCommandBuilders:
    def test_codex_read_only(self):
        cmd = codex_command(CliToolConfig(binary="codex", model="o4"))(request(prompt="--help me"))

        assert cmd == [
            "codex", "exec", "--model", "o4", "--sandbox", "read-only",
            "--cd", "/wt", "--skip-git-repo-check", "--", "--help me",
        ]

    def test_codex_writable(self):
        cmd = codex_command(CliToolConfig())(request(writable=True))

        assert "workspace-write" in cmd

    def test_teddy_prompt_not_in_argv(self):
        cmd = teddy_command(CliToolConfig(binary="teddy"), model="gpt-oss")(request(writable=True))

        assert cmd == ["teddy", "run", "--non-interactive", "--model", "gpt-oss", "--allow-writes"]


class TestSanitizeOutput:
    def test_strips_ansi_glyphs_and_controls(self):
        assert sanitize_output("\x1b[32m◐ ok\x1b[0m\x07 ──done") == " ok done"


class TestCliToolAdapter:
    def test_success_writes_log(self, fake_run, tmp_path):
        adapter = CliToolAdapter("tool.code.codex.exec", codex_command(CliToolConfig()), logs_dir=tmp_path)

        response = adapter(request())

        assert response.text == "done"
        assert response.log_path.startswith(str(tmp_path / "code."))
        assert Path(response.log_path).read_text() == "done\n"
        assert fake_run.call_args.kwargs["input"] is None

    def test_prompt_via_stdin(self, fake_run):
        adapter = CliToolAdapter("t", teddy_command(CliToolConfig(binary="teddy")), prompt_via_stdin=True)

        adapter(request(prompt="Explain the repo"))

        assert fake_run.call_args.kwargs["input"] == "Explain the repo"

    def test_nonzero_exit(self, fake_run):
        fake_run.return_value = subprocess.CompletedProcess([], 2, stdout="", stderr="boom")
        adapter = CliToolAdapter("t", codex_command(CliToolConfig()))

        with pytest.raises(ToolInvocationError, match=r"Command failed \(code\): codex \(exit 2\)"):
            adapter(request())

    def test_missing_binary(self, fake_run):
        fake_run.side_effect = FileNotFoundError()
        adapter = CliToolAdapter("t", codex_command(CliToolConfig(binary="codex")))

        with pytest.raises(ToolInvocationError, match="spawn codex ENOENT"):
            adapter(request())

    def test_timeout(self, fake_run):
        fake_run.side_effect = subprocess.TimeoutExpired(cmd="codex", timeout=5)
        adapter = CliToolAdapter("t", codex_command(CliToolConfig()), timeout_seconds=5)

        with pytest.raises(ToolInvocationError, match=r"timed out \(code\) after 5s"):
            adapter(request())

    def test_heartbeats_while_running(self, fake_run):
        def slow(*args, **kwargs):
            time.sleep(0.3)
            return subprocess.CompletedProcess([], 0, stdout="ok", stderr="")

        fake_run.side_effect = slow
        beats = []
        adapter = CliToolAdapter("t", codex_command(CliToolConfig()), heartbeat_interval=0.05)

        adapter(request(on_heartbeat=lambda name, elapsed: beats.append((name, elapsed))))

        assert len(beats) >= 2
        assert beats[0][0] == "code"
        assert beats[-1][1] > beats[0][1]
