from __future__ import annotations

import asyncio
import logging

import solana_cli
from deploy_errors import NetworkTimeoutError
from tool_runner import ToolRunner

logger = logging.getLogger(__name__)

PROBE_TIMEOUT_SECONDS = 5.0
RETRY_BACKOFF_SECONDS = 2.0


class NetworkReadinessProbe:
    """Polls `solana cluster-version` until the configured cluster answers."""

    def __init__(
        self,
        runner: ToolRunner,
        backoff: float = RETRY_BACKOFF_SECONDS,
        probe_timeout: float = PROBE_TIMEOUT_SECONDS,
    ):
        self.runner = runner
        self.backoff = backoff
        self.probe_timeout = probe_timeout

    async def wait_for_ready(self, max_retries: int) -> int:
        """Return the number of attempts it took; raise NetworkTimeoutError when exhausted."""
        logger.info("Waiting for the network to respond...")
        last_output = ""
        for attempt in range(1, max_retries + 1):
            result = await self.runner.run(
                solana_cli.command(solana_cli.SOLANA, "cluster-version"),
                timeout=self.probe_timeout,
            )
            if result.ok:
                logger.info("Network is reachable (%s)", result.stdout.strip() or "ok")
                return attempt

            last_output = result.output
            if attempt == max_retries:
                break
            logger.info("Network not reachable, retrying (%s/%s)...", attempt, max_retries)
            await asyncio.sleep(self.backoff)

        raise NetworkTimeoutError(max_retries, last_output)
