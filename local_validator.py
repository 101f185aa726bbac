from __future__ import annotations

import asyncio
import logging
from typing import List, Optional

import psutil

import solana_cli
from deploy_errors import ValidatorStartError
from deploy_run import DeploymentRun
from tool_runner import ToolRunner, sanitize

logger = logging.getLogger(__name__)

VALIDATOR_NAME = solana_cli.TEST_VALIDATOR
LEDGER_PATH = ".anchor/test-ledger"
STARTUP_TIMEOUT_SECONDS = 8.0
SHUTDOWN_GRACE_SECONDS = 5.0
LISTENING_TOKEN = "Listening"
ERROR_TOKENS = ("Error", "failed")


def validator_args() -> List[str]:
    return solana_cli.command(
        solana_cli.TEST_VALIDATOR,
        "--quiet",
        "--reset",
        "--ledger",
        LEDGER_PATH,
    )


class ValidatorProcessManager:
    """
    Detects or launches solana-test-validator.

    Startup is a one-shot race between the startup timer (optimistic success),
    a "Listening" line on stdout (success) and an error line on stderr or a
    non-zero exit (failure). The first event settles a single future; anything
    arriving afterwards is ignored.
    """

    def __init__(self, runner: ToolRunner, startup_timeout: float = STARTUP_TIMEOUT_SECONDS):
        self.runner = runner
        self.startup_timeout = startup_timeout
        self._watchers: List[asyncio.Task] = []

    def is_running(self) -> bool:
        try:
            for proc in psutil.process_iter(["name", "cmdline"]):
                info = proc.info
                name = info.get("name") or ""
                cmdline = " ".join(info.get("cmdline") or [])
                if VALIDATOR_NAME in name or VALIDATOR_NAME in cmdline:
                    return True
        except (psutil.Error, OSError) as exc:
            logger.debug("Process scan failed (%s); assuming validator is not running", exc)
        return False

    async def start(self):
        logger.info("Starting local solana-test-validator...")
        try:
            process = await self.runner.spawn(validator_args())
        except OSError as exc:
            raise ValidatorStartError(
                f"Unable to launch validator: {exc}", {"error": str(exc)}
            ) from exc

        loop = asyncio.get_running_loop()
        outcome: asyncio.Future = loop.create_future()

        def settle(error: Optional[Exception] = None) -> None:
            if outcome.done():
                return
            if error is None:
                outcome.set_result(process)
            else:
                outcome.set_exception(error)

        async def watch_stdout() -> None:
            while True:
                line = await process.stdout.readline()
                if not line:
                    return
                text = sanitize(line)
                logger.debug("[validator] %s", text.rstrip())
                if LISTENING_TOKEN in text:
                    settle()

        async def watch_stderr() -> None:
            while True:
                line = await process.stderr.readline()
                if not line:
                    return
                text = sanitize(line)
                logger.debug("[validator:stderr] %s", text.rstrip())
                if any(token in text for token in ERROR_TOKENS):
                    settle(ValidatorStartError(
                        f"Validator failed to start: {text.strip()}", {"stderr": text}
                    ))

        async def watch_exit() -> None:
            code = await process.wait()
            if code != 0:
                settle(ValidatorStartError(
                    f"Validator exited unexpectedly: code={code}", {"returncode": code}
                ))

        self._watchers = [
            asyncio.create_task(watch_stdout()),
            asyncio.create_task(watch_stderr()),
            asyncio.create_task(watch_exit()),
        ]
        timer = loop.call_later(self.startup_timeout, settle)
        try:
            await outcome
        except (ValidatorStartError, asyncio.CancelledError):
            # Never owned by a run at this point, so nothing else would stop it
            self._stop_watchers()
            _terminate_quietly(process)
            raise
        finally:
            timer.cancel()

        # Output watchers keep draining the pipes so the validator never blocks on them
        logger.info("Validator started (pid %s)", process.pid)
        return process

    def _stop_watchers(self) -> None:
        for task in self._watchers:
            if not task.done():
                task.cancel()
        self._watchers = []

    def close(self) -> None:
        self._stop_watchers()


def _terminate_quietly(process) -> None:
    try:
        if process.returncode is None:
            process.terminate()
    except (ProcessLookupError, OSError) as exc:
        logger.debug("Could not terminate failed validator: %s", exc)
    finally:
        process.release()


class CleanupCoordinator:
    """Stops the validator a run started: SIGTERM, then SIGKILL after a grace period."""

    def __init__(self, grace_period: float = SHUTDOWN_GRACE_SECONDS):
        self.grace_period = grace_period
        self._stopping: Optional[asyncio.Task] = None

    async def cleanup(self, run: Optional[DeploymentRun]) -> None:
        """
        Idempotent. The stop sequence runs as its own task so cancelling the
        caller mid grace period does not lose the SIGKILL escalation; a later
        call awaits the same task.
        """
        if run is not None and run.validator_process is not None:
            process = run.validator_process
            run.validator_process = None
            self._stopping = asyncio.ensure_future(self._stop_and_release(process))
        if self._stopping is not None:
            await asyncio.shield(self._stopping)

    async def _stop_and_release(self, process) -> None:
        try:
            await self._stop(process)
        finally:
            process.release()

    async def _stop(self, process) -> None:
        logger.info("Stopping local validator (pid %s)...", process.pid)
        if process.returncode is not None:
            logger.info("Local validator already exited (code %s)", process.returncode)
            return

        try:
            process.terminate()
        except (ProcessLookupError, OSError) as exc:
            logger.warning("Error while stopping validator: %s", exc)
            return

        try:
            await asyncio.wait_for(process.wait(), timeout=self.grace_period)
        except asyncio.TimeoutError:
            logger.warning(
                "Validator did not exit within %ss; sending SIGKILL", self.grace_period
            )
            try:
                process.kill()
            except (ProcessLookupError, OSError) as exc:
                logger.warning("Error while killing validator: %s", exc)
                return
        logger.info("Local validator stopped")
