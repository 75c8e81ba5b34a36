import asyncio
from pathlib import Path
from typing import Any

import pytest

from agentflow.backends.base import BackendExecutionError, BackendProcessError
from agentflow.backends.claude import ClaudeCodeBackend, StreamJsonDecoder


class FakeStderr:
    def __init__(self, payload: bytes = b"") -> None:
        self._payload = payload
        self.drained = asyncio.Event()

    async def read(self) -> bytes:
        self.drained.set()
        return self._payload


class FakeStdout:
    """Yields lines; with ``blocked_on`` set it waits until stderr has been read."""

    def __init__(self, lines: list[bytes], blocked_on: FakeStderr | None = None) -> None:
        self._lines = lines
        self._index = 0
        self._blocked_on = blocked_on

    def __aiter__(self) -> "FakeStdout":
        return self

    async def __anext__(self) -> bytes:
        if self._blocked_on is not None:
            await asyncio.wait_for(self._blocked_on.drained.wait(), timeout=1)
        if self._index >= len(self._lines):
            raise StopAsyncIteration
        line = self._lines[self._index]
        self._index += 1
        return line


class FakeProcess:
    def __init__(
        self,
        lines: list[bytes],
        return_code: int = 0,
        stderr: bytes = b"",
        stdout_needs_stderr_drained: bool = False,
    ) -> None:
        self.stderr = FakeStderr(stderr)
        self.stdout = FakeStdout(lines, self.stderr if stdout_needs_stderr_drained else None)
        self.returncode: int | None = None
        self.killed = False
        self._return_code = return_code

    async def wait(self) -> int:
        if self.returncode is None:
            self.returncode = self._return_code
        return self.returncode

    def kill(self) -> None:
        self.killed = True
        self.returncode = -9


def _collect(backend: ClaudeCodeBackend, context_message: str | None = None) -> str:
    async def _run() -> str:
        chunks: list[str] = []
        async for chunk in backend.execute("system rules", "start", context_message):
            chunks.append(chunk)
        return "".join(chunks)

    return asyncio.run(_run())


def test_claude_build_command_shape() -> None:
    backend = ClaudeCodeBackend(binary="claude", working_directory=Path("."))
    command = backend.build_command("implement feature")

    assert command[0:2] == ["claude", "-p"]
    assert command[2] == "implement feature"
    assert "--output-format" in command
    assert "stream-json" in command


def test_compose_prompt_puts_context_first() -> None:
    assert ClaudeCodeBackend.compose_prompt("start", None) == "start"
    assert ClaudeCodeBackend.compose_prompt("start", "<ctx/>") == "<ctx/>\n\nstart"


def test_claude_backend_streams_content(monkeypatch: pytest.MonkeyPatch) -> None:
    captured: dict[str, Any] = {}

    async def fake_create_subprocess_exec(*args: Any, **kwargs: Any) -> FakeProcess:
        captured["args"] = args
        captured["system_prompt"] = Path(kwargs["env"]["CLAUDE_MD"]).read_text(encoding="utf-8")
        return FakeProcess(
            [
                b'{"type":"assistant","content":"Hello "}\n',
                b"\n",
                b'{"type":"assistant","content":[{"type":"text","text":"wor"},\n',
                b'{"type":"text","text":"ld"}]}\n',
                b"plain text line\n",
                b'{"type":"delta","delta":"!"}\n',
                b'{"type":"result"}\n',
            ]
        )

    monkeypatch.setattr(asyncio, "create_subprocess_exec", fake_create_subprocess_exec)

    output = _collect(ClaudeCodeBackend(), context_message="<ctx/>")

    assert output == "Hello worldplain text line!"
    assert captured["system_prompt"] == "system rules"
    assert captured["args"][2] == "<ctx/>\n\nstart"


def test_claude_backend_raises_on_non_zero_exit(monkeypatch: pytest.MonkeyPatch) -> None:
    async def fake_create_subprocess_exec(*args: Any, **kwargs: Any) -> FakeProcess:
        _ = args, kwargs
        return FakeProcess([b'{"content":"partial"}\n'], return_code=2, stderr=b"rate limited")

    monkeypatch.setattr(asyncio, "create_subprocess_exec", fake_create_subprocess_exec)

    with pytest.raises(BackendExecutionError) as excinfo:
        _collect(ClaudeCodeBackend())

    assert excinfo.value.exit_code == 2
    assert excinfo.value.backend == "claude"
    assert "rate limited" in str(excinfo.value)


def test_claude_backend_missing_binary(monkeypatch: pytest.MonkeyPatch) -> None:
    async def fake_create_subprocess_exec(*args: Any, **kwargs: Any) -> FakeProcess:
        _ = args, kwargs
        raise FileNotFoundError("claude")

    monkeypatch.setattr(asyncio, "create_subprocess_exec", fake_create_subprocess_exec)

    with pytest.raises(BackendProcessError, match="not found"):
        _collect(ClaudeCodeBackend(binary="no-such-claude"))


def test_claude_backend_reads_stderr_while_streaming(monkeypatch: pytest.MonkeyPatch) -> None:
    async def fake_create_subprocess_exec(*args: Any, **kwargs: Any) -> FakeProcess:
        _ = args, kwargs
        return FakeProcess(
            [b'{"type":"assistant","content":"done"}\n'],
            stderr=b"x" * 300_000,
            stdout_needs_stderr_drained=True,
        )

    monkeypatch.setattr(asyncio, "create_subprocess_exec", fake_create_subprocess_exec)

    assert _collect(ClaudeCodeBackend()) == "done"


def test_claude_backend_kills_child_when_consumer_stops(monkeypatch: pytest.MonkeyPatch) -> None:
    process = FakeProcess([b'{"content":"one"}\n', b'{"content":"two"}\n'])

    async def fake_create_subprocess_exec(*args: Any, **kwargs: Any) -> FakeProcess:
        _ = args, kwargs
        return process

    monkeypatch.setattr(asyncio, "create_subprocess_exec", fake_create_subprocess_exec)

    async def _run() -> str:
        stream = ClaudeCodeBackend().execute("system rules", "start")
        first = await stream.__anext__()
        await stream.aclose()
        return first

    assert asyncio.run(_run()) == "one"
    assert process.killed is True


def test_stream_json_decoder_joins_split_events_and_flushes_leftovers() -> None:
    decoder = StreamJsonDecoder()

    assert decoder.feed('{"content": [{"text": "a"},') == ""
    assert decoder.feed('{"text": "b"}]}') == "ab"
    assert decoder.feed("42") == ""
    assert decoder.feed("not json") == "not json"
    assert decoder.feed('{"content": "cut') == ""
    assert decoder.flush() == '{"content": "cut'
    assert decoder.flush() == ""
