"""One-shot Claude CLI calls used for conflict resolution and review."""

import logging
import subprocess
from pathlib import Path

from agent_dispatch.errors import ProcessError

logger = logging.getLogger(__name__)


class ClaudeCli:
    def __init__(self, claude_path: str = "claude", model: str | None = "sonnet",
                 timeout: float | None = None):
        self.claude_path = claude_path
        self.model = model
        self.timeout = timeout

    def build_command(self, prompt: str) -> list[str]:
        cmd = [self.claude_path, "-p", prompt, "--output-format", "text"]
        if self.model:
            cmd += ["--model", self.model]
        return cmd

    def run(self, prompt: str, cwd: str | Path | None = None) -> str:
        """Run a prompt in print mode and return the response text."""
        cmd = self.build_command(prompt)
        try:
            result = subprocess.run(
                cmd,
                cwd=cwd,
                capture_output=True,
                text=True,
                check=True,
                timeout=self.timeout,
            )
        except FileNotFoundError as e:
            raise ProcessError(f"Claude CLI not found at '{self.claude_path}'") from e
        except subprocess.TimeoutExpired as e:
            raise ProcessError(f"Claude CLI timed out after {self.timeout}s") from e
        except subprocess.CalledProcessError as e:
            detail = (e.stderr or e.stdout or "").strip()
            raise ProcessError(f"Claude CLI exited with {e.returncode}: {detail}") from e
        return result.stdout.strip()
