"""Client for long-lived tool servers spoken to over stdio.

The child process exchanges newline-delimited JSON-RPC 2.0 messages on its
stdin/stdout (the MCP stdio framing).  One reader task routes responses to
waiting callers by request id, so a single handle can serve concurrent
requests.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import os
from typing import Any

import structlog

from hybrid_search.errors import ProviderInvocationError, ProviderUnavailable

logger = structlog.get_logger(__name__)

_PROTOCOL_VERSION = "2024-11-05"
_CLIENT_INFO = {"name": "hybrid-search", "version": "0.1.0"}
_STOP_GRACE_SECONDS = 3.0
_STREAM_LIMIT = 4 * 1024 * 1024


def _collect_text(result: dict[str, Any]) -> str:
    """Join the text blocks of a ``tools/call`` result."""
    blocks = result.get("content")
    if isinstance(blocks, list):
        texts = [
            str(block.get("text", ""))
            for block in blocks
            if isinstance(block, dict) and block.get("type") == "text"
        ]
        return "\n".join(t for t in texts if t)
    structured = result.get("structuredContent")
    if structured is not None:
        return json.dumps(structured)
    return ""


class StdioToolClient:
    """Handle to one tool-server subprocess.

    Args:
        provider_id:       Provider this handle belongs to.
        command:           Executable to spawn.
        args:              Command-line arguments.
        env:               Extra environment variables for the child.
        cwd:               Working directory for the child.
        api_key_env:       Credential variable the tool expects to inherit.
        handshake_timeout: Seconds allowed for the ``initialize`` exchange.
    """

    def __init__(
        self,
        provider_id: str,
        command: str,
        args: list[str] | None = None,
        *,
        env: dict[str, str] | None = None,
        cwd: str | None = None,
        api_key_env: str | None = None,
        handshake_timeout: float = 10.0,
    ) -> None:
        self.provider_id = provider_id
        self._command = command
        self._args = list(args or [])
        self._env = dict(env or {})
        self._cwd = cwd
        self._api_key_env = api_key_env
        self._handshake_timeout = handshake_timeout

        self._process: asyncio.subprocess.Process | None = None
        self._reader: asyncio.Task[None] | None = None
        self._stderr_drain: asyncio.Task[None] | None = None
        self._pending: dict[int, asyncio.Future[dict[str, Any]]] = {}
        self._write_lock = asyncio.Lock()
        self._next_id = 0
        self.server_info: dict[str, Any] = {}

    @property
    def connected(self) -> bool:
        """True while the child runs and its stdout is still open."""
        if self._process is None or self._process.returncode is not None:
            return False
        return self._reader is None or not self._reader.done()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def connect(self) -> None:
        """Spawn the tool server and perform the initialize handshake.

        Raises:
            ProviderUnavailable: If the process cannot start or the handshake
                fails or times out.
        """
        child_env = {**os.environ, **self._env}
        if self._api_key_env and not child_env.get(self._api_key_env):
            logger.warning(
                "stdio_tool.api_key_missing",
                provider=self.provider_id,
                variable=self._api_key_env,
            )

        try:
            self._process = await asyncio.create_subprocess_exec(
                self._command,
                *self._args,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=child_env,
                cwd=self._cwd,
                limit=_STREAM_LIMIT,
            )
        except OSError as exc:
            raise ProviderUnavailable(
                self.provider_id, f"cannot start '{self._command}': {exc}"
            ) from exc

        self._reader = asyncio.create_task(self._read_loop())
        self._stderr_drain = asyncio.create_task(self._drain_stderr())

        try:
            result = await asyncio.wait_for(
                self._request(
                    "initialize",
                    {
                        "protocolVersion": _PROTOCOL_VERSION,
                        "capabilities": {},
                        "clientInfo": _CLIENT_INFO,
                    },
                ),
                timeout=self._handshake_timeout,
            )
            await self._send({"jsonrpc": "2.0", "method": "notifications/initialized"})
        except (asyncio.TimeoutError, ProviderInvocationError) as exc:
            await self.close()
            reason = "timed out" if isinstance(exc, asyncio.TimeoutError) else str(exc)
            raise ProviderUnavailable(self.provider_id, f"handshake failed: {reason}") from exc

        self.server_info = result.get("serverInfo", {}) if isinstance(result, dict) else {}
        logger.info(
            "stdio_tool.connected",
            provider=self.provider_id,
            pid=self._process.pid,
            server=self.server_info.get("name"),
        )

    async def close(self) -> None:
        """Stop the child: close stdin, then terminate, then kill."""
        process, self._process = self._process, None
        if process is not None and process.returncode is None:
            if process.stdin is not None:
                process.stdin.close()
            for stop in (None, process.terminate, process.kill):
                if stop is not None:
                    with contextlib.suppress(ProcessLookupError):
                        stop()
                try:
                    await asyncio.wait_for(process.wait(), timeout=_STOP_GRACE_SECONDS)
                    break
                except asyncio.TimeoutError:
                    continue

        for task in (self._reader, self._stderr_drain):
            if task is not None and not task.done():
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task
        self._fail_pending("tool process closed")
        logger.debug("stdio_tool.closed", provider=self.provider_id)

    # ------------------------------------------------------------------
    # Tool calls
    # ------------------------------------------------------------------

    async def call_tool(self, name: str, arguments: dict[str, Any]) -> str:
        """Invoke tool *name* and return its text output.

        Raises:
            ProviderInvocationError: On a JSON-RPC error, a tool-reported
                error, or if the process has exited.
        """
        result = await self._request("tools/call", {"name": name, "arguments": arguments})
        text = _collect_text(result)
        if result.get("isError"):
            raise ProviderInvocationError(self.provider_id, text or f"tool '{name}' reported an error")
        return text

    async def _request(self, method: str, params: dict[str, Any]) -> dict[str, Any]:
        if not self.connected:
            raise ProviderInvocationError(self.provider_id, "tool process is not running")

        self._next_id += 1
        request_id = self._next_id
        future: asyncio.Future[dict[str, Any]] = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future
        try:
            await self._send(
                {"jsonrpc": "2.0", "id": request_id, "method": method, "params": params}
            )
            message = await future
        finally:
            self._pending.pop(request_id, None)

        error = message.get("error")
        if error is not None:
            detail = error.get("message", error) if isinstance(error, dict) else error
            raise ProviderInvocationError(self.provider_id, f"{method} failed: {detail}")
        result = message.get("result")
        return result if isinstance(result, dict) else {}

    async def _send(self, message: dict[str, Any]) -> None:
        process = self._process
        if process is None or process.stdin is None:
            raise ProviderInvocationError(self.provider_id, "tool process is not running")
        data = json.dumps(message).encode("utf-8") + b"\n"
        async with self._write_lock:
            try:
                process.stdin.write(data)
                await process.stdin.drain()
            except (BrokenPipeError, ConnectionResetError) as exc:
                raise ProviderInvocationError(self.provider_id, f"write failed: {exc}") from exc

    # ------------------------------------------------------------------
    # Background readers
    # ------------------------------------------------------------------

    async def _read_loop(self) -> None:
        process = self._process
        assert process is not None and process.stdout is not None
        try:
            while True:
                line = await process.stdout.readline()
                if not line:
                    break
                try:
                    message = json.loads(line)
                except ValueError:
                    logger.debug("stdio_tool.non_json_line", provider=self.provider_id)
                    continue
                if not isinstance(message, dict) or "method" in message:
                    # Notifications and server-initiated requests are ignored.
                    continue
                msg_id = message.get("id")
                future = self._pending.get(msg_id) if isinstance(msg_id, int) else None
                if future is not None and not future.done():
                    future.set_result(message)
        finally:
            self._fail_pending("tool process exited")

    async def _drain_stderr(self) -> None:
        process = self._process
        assert process is not None and process.stderr is not None
        while True:
            line = await process.stderr.readline()
            if not line:
                return
            logger.debug(
                "stdio_tool.stderr",
                provider=self.provider_id,
                line=line.decode("utf-8", "replace").rstrip()[:500],
            )

    def _fail_pending(self, reason: str) -> None:
        for future in self._pending.values():
            if not future.done():
                future.set_exception(ProviderInvocationError(self.provider_id, reason))
        self._pending.clear()
