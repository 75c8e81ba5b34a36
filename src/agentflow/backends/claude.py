"""Claude CLI backend: one ``claude -p`` process per chat turn.

The workflow context block is sent ahead of the user's text and the system
prompt travels through a ``CLAUDE_MD`` file. Output is the CLI's stream-json
event feed, flattened to the assistant text the artifact parser reads.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import os
import tempfile
from collections.abc import AsyncIterator
from pathlib import Path
from typing import Any

from agentflow.backends.base import AgentBackend, BackendExecutionError, BackendProcessError


class StreamJsonDecoder:
    """Turns stream-json lines into text, joining events split across lines."""

    def __init__(self) -> None:
        self._pending = ""

    @staticmethod
    def _unbalanced(raw: str) -> bool:
        return raw.count("{") > raw.count("}") or raw.count("[") > raw.count("]")

    @staticmethod
    def event_text(event: Any) -> str:
        if not isinstance(event, dict):
            return ""
        content = event.get("content")
        if isinstance(content, str):
            return content
        if isinstance(content, list):
            return "".join(
                item["text"]
                for item in content
                if isinstance(item, dict) and isinstance(item.get("text"), str)
            )
        delta = event.get("delta")
        return delta if isinstance(delta, str) else ""

    def feed(self, line: str) -> str:
        line = line.strip()
        if not line:
            return ""
        candidate = self._pending + line
        try:
            event = json.loads(candidate)
        except json.JSONDecodeError:
            if self._unbalanced(candidate):
                self._pending = candidate
                return ""
            self._pending = ""
            # Non-JSON output is assistant text too.
            return line
        self._pending = ""
        return self.event_text(event)

    def flush(self) -> str:
        remainder, self._pending = self._pending, ""
        return remainder


async def _read_stderr(stream: asyncio.StreamReader | None) -> str:
    if stream is None:
        return ""
    return (await stream.read()).decode("utf-8", errors="replace").strip()


class ClaudeCodeBackend(AgentBackend):
    name = "claude"

    def __init__(self, binary: str = "claude", working_directory: Path | None = None) -> None:
        self.binary = binary
        self.working_directory = working_directory

    def build_command(self, user_prompt: str) -> list[str]:
        return [self.binary, "-p", user_prompt, "--output-format", "stream-json"]

    @staticmethod
    def compose_prompt(user_prompt: str, context_message: str | None) -> str:
        if not context_message:
            return user_prompt
        return f"{context_message}\n\n{user_prompt}"

    async def _spawn(self, prompt: str, system_prompt_path: str) -> asyncio.subprocess.Process:
        env = os.environ.copy()
        env["CLAUDE_MD"] = system_prompt_path
        try:
            process = await asyncio.create_subprocess_exec(
                *self.build_command(prompt),
                cwd=str(self.working_directory) if self.working_directory else None,
                env=env,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as exc:
            raise BackendProcessError(
                f"Claude binary not found: {self.binary}", backend=self.name
            ) from exc
        if process.stdout is None:
            raise BackendProcessError("Claude backend did not expose stdout.", backend=self.name)
        return process

    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context_message: str | None = None,
    ) -> AsyncIterator[str]:
        with tempfile.NamedTemporaryFile(mode="w", suffix=".md", encoding="utf-8") as prompt_file:
            prompt_file.write(system_prompt)
            prompt_file.flush()
            process = await self._spawn(
                self.compose_prompt(user_prompt, context_message), prompt_file.name
            )

            # stderr is drained alongside stdout so a chatty child cannot fill the pipe.
            stderr_task = asyncio.create_task(_read_stderr(process.stderr))
            decoder = StreamJsonDecoder()
            try:
                async for raw_line in process.stdout:
                    text = decoder.feed(raw_line.decode("utf-8", errors="replace"))
                    if text:
                        yield text
                remainder = decoder.flush()
                if remainder:
                    yield remainder
                return_code = await process.wait()
                stderr_output = await stderr_task
            finally:
                if process.returncode is None:
                    with contextlib.suppress(ProcessLookupError):
                        process.kill()
                    await process.wait()
                if not stderr_task.done():
                    stderr_task.cancel()
                    await asyncio.gather(stderr_task, return_exceptions=True)

        if return_code != 0:
            raise BackendExecutionError(
                f"Claude backend failed with exit code {return_code}: {stderr_output}",
                backend=self.name,
                exit_code=return_code,
            )
