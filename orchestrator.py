from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys
import time
from pathlib import Path
from typing import Optional

from anchor_steps import BuildExecutor, DeployExecutor, DeploymentVerifier
from cluster_env import EnvironmentResolver
from deploy_config import DeployConfig
from deploy_errors import DeploymentError
from deploy_history import DeploymentHistory
from deploy_run import DeploymentRun, DeployState
from local_validator import CleanupCoordinator, ValidatorProcessManager
from network_probe import NetworkReadinessProbe
from tool_runner import ToolRunner

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s - %(levelname)s - %(message)s"
SEPARATOR = "=" * 50
TROUBLESHOOTING_HINTS = (
    "Check network connectivity and the RPC configuration (solana config get)",
    "Make sure the deploy wallet has enough SOL",
    "Verify Anchor and Solana CLI version compatibility",
    "Re-run with --verbose for detailed logs",
)


class DeploymentOrchestrator:
    """
    Runs the deployment pipeline:
    environment -> (local) validator -> readiness -> build -> deploy -> verify.

    Stages run strictly in order; the first fatal error aborts the rest of the
    pipeline and is re-raised once the finalization policy has run.
    """

    def __init__(
        self,
        config: DeployConfig,
        runner: Optional[ToolRunner] = None,
        *,
        resolver: Optional[EnvironmentResolver] = None,
        validator: Optional[ValidatorProcessManager] = None,
        probe: Optional[NetworkReadinessProbe] = None,
        builder: Optional[BuildExecutor] = None,
        deployer: Optional[DeployExecutor] = None,
        verifier: Optional[DeploymentVerifier] = None,
        cleaner: Optional[CleanupCoordinator] = None,
        history: Optional[DeploymentHistory] = None,
    ):
        self.config = config
        self.runner = runner or ToolRunner()
        self.resolver = resolver or EnvironmentResolver(config, self.runner)
        self.validator = validator or ValidatorProcessManager(self.runner)
        self.probe = probe or NetworkReadinessProbe(self.runner)
        self.builder = builder or BuildExecutor(self.runner)
        self.deployer = deployer or DeployExecutor(self.runner)
        self.verifier = verifier or DeploymentVerifier(self.runner)
        self.cleaner = cleaner or CleanupCoordinator()
        self.history = history
        self.run: Optional[DeploymentRun] = None
        self.state = DeployState.START
        self.interrupted = False

    def _advance(self, state: DeployState) -> None:
        logger.debug("State: %s -> %s", self.state.value, state.value)
        self.state = state

    async def deploy(self) -> DeploymentRun:
        started_at = time.monotonic()
        self.state = DeployState.START
        logger.info("Starting Solana program deployment")
        logger.info(SEPARATOR)

        try:
            cluster = await self.resolver.ensure_correct_environment()
            self.run = DeploymentRun(cluster, started_at=started_at)
            self._advance(DeployState.ENVIRONMENT_RESOLVED)

            if cluster.is_local:
                logger.info("Local cluster detected, preparing test validator...")
                if not self.validator.is_running():
                    self.run.validator_process = await self.validator.start()
                else:
                    logger.info("Local validator already running")
                self._advance(DeployState.VALIDATOR_READY)
                await self.probe.wait_for_ready(self.config.local_retries)
            else:
                logger.info("Using remote cluster: %s", cluster.name)
                await self.probe.wait_for_ready(self.config.remote_retries)
            self._advance(DeployState.NETWORK_READY)

            await self.builder.build()
            self._advance(DeployState.BUILT)

            program_id = await self.deployer.deploy(cluster)
            if program_id:
                self.run.program_id = program_id
            self._advance(DeployState.DEPLOYED)

            await self.verifier.verify(self.run.program_id)
            self._advance(DeployState.VERIFIED)

            self._advance(DeployState.DONE)
            self._report_success(_elapsed(started_at))
            return self.run
        except asyncio.CancelledError:
            self.state = DeployState.ABORTED
            self._record_history("interrupted", _elapsed(started_at))
            raise
        except Exception as exc:  # noqa: BLE001
            self.state = DeployState.ABORTED
            self._report_failure(exc, _elapsed(started_at))
            raise
        finally:
            await self._finalize()

    async def shutdown(self) -> None:
        """Single teardown path for signals and normal finalization. Idempotent."""
        await self.cleaner.cleanup(self.run)
        self.validator.close()

    async def _finalize(self) -> None:
        if self.interrupted or self.config.should_cleanup:
            await self.shutdown()
        elif self.run and self.run.owns_validator:
            logger.info(
                "Local validator (pid %s) left running; stop it manually when finished",
                self.run.validator_process.pid,
            )

    def _report_success(self, elapsed: float) -> None:
        logger.info(SEPARATOR)
        logger.info("Deployment completed in %ss", elapsed)
        if self.run and self.run.program_id:
            logger.info("Program info:")
            logger.info("  Cluster: %s", self.run.cluster.name)
            logger.info("  Program ID: %s", self.run.program_id)
            logger.info("  RPC URL: %s", self.run.cluster.url)
        self._record_history("success", elapsed)

    def _report_failure(self, exc: Exception, elapsed: float) -> None:
        logger.info(SEPARATOR)
        logger.error("Deployment failed after %ss", elapsed)
        logger.error("Error: %s", exc)
        logger.info("Troubleshooting:")
        for idx, hint in enumerate(TROUBLESHOOTING_HINTS, start=1):
            logger.info("%s. %s", idx, hint)
        self._record_history("failed", elapsed, exc)

    def _record_history(self, status: str, elapsed: float, exc: Optional[Exception] = None) -> None:
        if self.history is None:
            return
        run = self.run
        try:
            self.history.record(
                status,
                cluster=run.cluster.name if run else None,
                url=run.cluster.url if run else None,
                program_id=run.program_id if run else None,
                duration_seconds=elapsed,
                error=str(exc) if exc else None,
                error_kind=_error_kind(exc),
                details={"state": self.state.value},
            )
        except Exception as err:  # noqa: BLE001
            logger.warning("Deployment history logging failed: %s", err)


def _elapsed(started_at: float) -> float:
    return round(time.monotonic() - started_at, 2)


def _error_kind(exc: Optional[Exception]) -> Optional[str]:
    if exc is None:
        return None
    if isinstance(exc, DeploymentError):
        failure = exc.details.get("failure")
        return f"{exc.kind}:{failure}" if failure else exc.kind
    return type(exc).__name__


async def run_with_signals(orchestrator: DeploymentOrchestrator) -> int:
    """
    Run the pipeline with SIGINT/SIGTERM wired to the orchestrator's shutdown.
    Returns the process exit code.
    """
    loop = asyncio.get_running_loop()
    pipeline = asyncio.create_task(orchestrator.deploy())

    def on_signal(signame: str) -> None:
        logger.warning("Received %s, cleaning up...", signame)
        orchestrator.interrupted = True
        pipeline.cancel()

    installed = []
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, on_signal, sig.name)
            installed.append(sig)
        except (NotImplementedError, RuntimeError):
            # add_signal_handler is unavailable on Windows event loops
            logger.debug("Signal handler for %s not installed", sig.name)

    try:
        await pipeline
    except asyncio.CancelledError:
        if not orchestrator.interrupted:
            raise
        await orchestrator.shutdown()
        return 0
    except Exception:  # noqa: BLE001
        return 1
    finally:
        for sig in installed:
            loop.remove_signal_handler(sig)
    return 0


def build_history(history_dir: Optional[Path]) -> Optional[DeploymentHistory]:
    if history_dir is None:
        return None
    try:
        return DeploymentHistory(history_dir)
    except OSError as exc:
        logger.warning("Deployment history disabled (%s): %s", history_dir, exc)
        return None


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        description="Build and deploy the Anchor program to the configured Solana cluster."
    )
    parser.add_argument("--verbose", action="store_true", help="Enable debug logging.")
    parser.add_argument(
        "--history-dir",
        type=Path,
        default=None,
        help="Directory for the deployment history log (overrides SOLANA_DEPLOY_HISTORY_DIR).",
    )
    args = parser.parse_args(argv)

    config = DeployConfig.from_env(history_dir=args.history_dir, verbose=args.verbose or None)
    logging.basicConfig(level=logging.DEBUG if config.verbose else logging.INFO, format=LOG_FORMAT)
    orchestrator = DeploymentOrchestrator(config, history=build_history(config.history_dir))
    try:
        return asyncio.run(run_with_signals(orchestrator))
    except KeyboardInterrupt:
        print("Interrupted.", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
