"""Tests for the Claude CLI wrapper and Slack notifications."""

import subprocess
from unittest.mock import MagicMock, patch

import pytest

from agent_dispatch.errors import ProcessError
from agent_dispatch.integrations import claude as claude_mod
from agent_dispatch.integrations import slack as slack_mod
from agent_dispatch.integrations.claude import ClaudeCli
from agent_dispatch.integrations.slack import SlackError, SlackNotifier, format_batch_report


class TestClaudeCli:
    def test_command(self):
        cmd = ClaudeCli("claude", "opus").build_command("hi")
        assert cmd == ["claude", "-p", "hi", "--output-format", "text", "--model", "opus"]
        assert "--model" not in ClaudeCli(model=None).build_command("hi")

    def test_run_returns_stripped_output(self):
        done = subprocess.CompletedProcess([], 0, "  answer\n", "")
        with patch.object(claude_mod.subprocess, "run", return_value=done) as run:
            assert ClaudeCli().run("q", cwd="/tmp") == "answer"
        assert run.call_args.kwargs["cwd"] == "/tmp"

    @pytest.mark.parametrize("error", [
        FileNotFoundError("claude"),
        subprocess.TimeoutExpired(["claude"], 5),
        subprocess.CalledProcessError(1, ["claude"], stderr="rate limited"),
    ])
    def test_failures_become_process_errors(self, error):
        with patch.object(claude_mod.subprocess, "run", side_effect=error):
            with pytest.raises(ProcessError):
                ClaudeCli(timeout=5).run("q")


class TestSlack:
    def test_disabled_without_token(self):
        notifier = SlackNotifier(None, "#dev")
        assert not notifier.enabled
        assert notifier.notify("hi") is None

    def test_send(self):
        client = MagicMock()
        client.chat_postMessage.return_value = {"channel": "C1", "ts": "1.0"}
        with patch.object(slack_mod, "get_client", return_value=client):
            message = SlackNotifier("xoxb", "#dev").notify("hi")
        assert message.ts == "1.0"
        client.chat_postMessage.assert_called_once_with(channel="#dev", text="hi", blocks=None)

    def test_failure_is_logged_not_raised(self):
        with patch.object(slack_mod, "send_message", side_effect=SlackError("down")):
            assert SlackNotifier("xoxb", "#dev").notify("hi") is None

    def test_batch_report_blocks(self):
        blocks = format_batch_report([(1, "merged", "abc123"), (2, "rejected", "")])
        text = blocks[0]["text"]["text"]
        assert "#1: *merged* (abc123)" in text
        assert ":x: #2: *rejected*" in text
