from __future__ import annotations

import logging
import re
from typing import Optional, Tuple

import solana_cli
from cluster_env import ClusterInfo
from deploy_errors import (
    CONNECTION_REFUSED,
    INSUFFICIENT_FUNDS,
    UNCLASSIFIED,
    BuildError,
    DeployError,
)
from tool_runner import ToolRunner

logger = logging.getLogger(__name__)

PROGRAM_ID_PATTERN = re.compile(r"Program Id: ([A-Za-z0-9]{32,})")
ERROR_MARKER = "Error"
EXECUTABLE_MARKER = "executable: true"

HINTS = {
    (INSUFFICIENT_FUNDS, True): "Wallet balance too low. Fund it locally with: solana airdrop 10",
    (INSUFFICIENT_FUNDS, False): "Wallet balance too low. Fund the deploy wallet on this cluster before retrying.",
    (CONNECTION_REFUSED, True): "Cannot reach the local cluster. Make sure solana-test-validator is running.",
    (CONNECTION_REFUSED, False): "Cannot reach the Solana network. Check the RPC URL in `solana config get`.",
}


def parse_program_id(stdout: str) -> Optional[str]:
    match = PROGRAM_ID_PATTERN.search(stdout or "")
    return match.group(1) if match else None


def classify_deploy_failure(text: str, is_local: bool) -> Tuple[str, Optional[str]]:
    if "insufficient funds" in text:
        failure = INSUFFICIENT_FUNDS
    elif "Connection refused" in text:
        failure = CONNECTION_REFUSED
    else:
        return UNCLASSIFIED, None
    return failure, HINTS[(failure, is_local)]


class BuildExecutor:
    def __init__(self, runner: ToolRunner):
        self.runner = runner

    async def build(self) -> None:
        logger.info("Building Anchor program...")
        result = await self.runner.run(solana_cli.command(solana_cli.ANCHOR, "build"))
        if not result.ok:
            output = (
                result.stderr.strip()
                or result.stdout.strip()
                or f"anchor build exited with code {result.returncode}"
            )
            logger.error("Build failed: %s", output)
            raise BuildError(output)
        logger.info("Build complete")


class DeployExecutor:
    def __init__(self, runner: ToolRunner):
        self.runner = runner

    async def deploy(self, cluster: ClusterInfo) -> Optional[str]:
        """
        Run `anchor deploy` and return the parsed program id, if any.
        An "Error" on stderr fails the deploy even when the exit code is 0.
        """
        logger.info("Deploying program to %s...", cluster.name)
        result = await self.runner.run(solana_cli.command(solana_cli.ANCHOR, "deploy"))

        failed = ERROR_MARKER in result.stderr or not result.ok
        if failed:
            output = result.output or f"anchor deploy exited with code {result.returncode}"
            failure, hint = classify_deploy_failure(output, cluster.is_local)
            logger.error("Deploy failed (%s): %s", failure, output)
            if hint:
                logger.info(hint)
            raise DeployError(output, failure, hint)

        program_id = parse_program_id(result.stdout)
        if program_id:
            logger.info("Program deployed! Program ID: %s", program_id)
        else:
            logger.info("Program deployed (no program id found in output)")
        return program_id


class DeploymentVerifier:
    def __init__(self, runner: ToolRunner):
        self.runner = runner

    async def verify(self, program_id: Optional[str]) -> bool:
        """Advisory check that the program account is executable. Never raises."""
        if not program_id:
            logger.warning("Skipping verification: no program id captured")
            return True

        logger.info("Verifying program %s...", program_id)
        try:
            result = await self.runner.run(
                solana_cli.command(solana_cli.SOLANA, "account", program_id)
            )
        except Exception as exc:  # noqa: BLE001
            logger.warning("Verification failed: %s", exc)
            return False

        if not result.ok:
            logger.warning("Verification failed: %s", result.output)
            return False
        if EXECUTABLE_MARKER in result.stdout:
            logger.info("Verification passed: program account is executable")
            return True
        logger.warning("Verification warning: program may not be deployed correctly")
        return False
