from __future__ import annotations

import asyncio
import logging
import subprocess
import time
from dataclasses import dataclass
from typing import List, Optional, Sequence

logger = logging.getLogger(__name__)

NOT_FOUND_RETURNCODE = 127
TIMEOUT_RETURNCODE = 124


def sanitize(text) -> str:
    if isinstance(text, bytes):
        text = text.decode("utf-8", errors="ignore")
    if not isinstance(text, str):
        return ""
    return text.replace("\x00", "")


@dataclass
class ToolResult:
    command: List[str]
    returncode: int
    stdout: str = ""
    stderr: str = ""
    duration_seconds: float = 0.0

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    @property
    def output(self) -> str:
        """Error-first view of everything the tool printed."""
        parts = [self.stderr.strip(), self.stdout.strip()]
        return "\n".join(part for part in parts if part)


class SpawnedProcess:
    """
    Handle on a long-running child.

    Unlike asyncio's subprocess transport, closing the event loop does not
    kill it, so a validator can outlive the deploy command when the operator
    keeps it.
    """

    poll_interval = 0.1

    def __init__(self, popen: subprocess.Popen, stdout, stderr, transports=None):
        self.popen = popen
        self.stdout = stdout
        self.stderr = stderr
        self._transports = list(transports or [])

    @property
    def pid(self) -> int:
        return self.popen.pid

    @property
    def returncode(self) -> Optional[int]:
        return self.popen.poll()

    async def wait(self) -> int:
        while self.popen.poll() is None:
            await asyncio.sleep(self.poll_interval)
        return self.popen.returncode

    def terminate(self) -> None:
        self.popen.terminate()

    def kill(self) -> None:
        self.popen.kill()

    def release(self) -> None:
        """Stop reading the child's output; the child itself is left alone."""
        for transport in self._transports:
            transport.close()
        self._transports = []


@dataclass
class ToolRunner:
    """
    Runs external CLI tools (solana, anchor, solana-test-validator).

    `run` waits for completion and never raises on a non-zero exit; missing
    executables and timeouts are mapped to shell-style return codes so callers
    only ever inspect a ToolResult. `spawn` hands back a live process with its
    output streams piped for callers that supervise long-running tools.
    """

    cwd: Optional[str] = None

    async def run(self, args: Sequence[str], timeout: Optional[float] = None) -> ToolResult:
        cmd = [str(arg) for arg in args]
        logger.debug("Running command: %s", " ".join(cmd))
        start = time.monotonic()
        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=self.cwd,
            )
        except FileNotFoundError as exc:
            result = ToolResult(cmd, NOT_FOUND_RETURNCODE, "", str(exc))
            self._record(result, start)
            return result

        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
        except asyncio.TimeoutError:
            try:
                process.kill()
            except ProcessLookupError:
                pass
            await process.wait()
            result = ToolResult(cmd, TIMEOUT_RETURNCODE, "", f"Timed out after {timeout}s")
            self._record(result, start)
            return result

        result = ToolResult(
            cmd,
            process.returncode if process.returncode is not None else -1,
            sanitize(stdout),
            sanitize(stderr),
        )
        self._record(result, start)
        return result

    async def spawn(self, args: Sequence[str]) -> "SpawnedProcess":
        """
        Launch a long-running tool in its own session with piped output.
        Raises OSError (e.g. FileNotFoundError) when it cannot be launched.
        """
        cmd = [str(arg) for arg in args]
        logger.debug("Spawning process: %s", " ".join(cmd))
        popen = subprocess.Popen(
            cmd,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            cwd=self.cwd,
            start_new_session=True,
        )
        loop = asyncio.get_running_loop()
        stdout = asyncio.StreamReader()
        stderr = asyncio.StreamReader()
        out_transport, _ = await loop.connect_read_pipe(
            lambda: asyncio.StreamReaderProtocol(stdout), popen.stdout
        )
        err_transport, _ = await loop.connect_read_pipe(
            lambda: asyncio.StreamReaderProtocol(stderr), popen.stderr
        )
        return SpawnedProcess(popen, stdout, stderr, [out_transport, err_transport])

    def _record(self, result: ToolResult, start: float) -> None:
        result.duration_seconds = round(time.monotonic() - start, 2)
        logger.debug(
            "cmd: %s | returncode: %s | duration: %ss",
            " ".join(result.command),
            result.returncode,
            result.duration_seconds,
        )
