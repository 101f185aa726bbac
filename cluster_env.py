from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Dict, List, Optional

import solana_cli
from deploy_config import DeployConfig
from deploy_errors import ConfigReadError, EnvironmentSwitchError
from tool_runner import ToolRunner

logger = logging.getLogger(__name__)

LOCALNET = "localnet"
DEVNET = "devnet"
TESTNET = "testnet"
MAINNET = "mainnet"
CUSTOM = "custom"

RPC_URL_LABEL = "RPC URL:"
LOOPBACK_HOSTS = ("localhost", "127.0.0.1")
SETTLE_DELAY_SECONDS = 1.0


@dataclass(frozen=True)
class ClusterInfo:
    name: str
    url: str
    is_local: bool


@dataclass(frozen=True)
class EnvironmentDescriptor:
    name: str
    display_name: str
    url: str
    description: str
    requires_funds: bool


ENVIRONMENTS: List[EnvironmentDescriptor] = [
    EnvironmentDescriptor(
        name=LOCALNET,
        display_name="Localnet",
        url="http://localhost:8899",
        description="Local test validator, no real funds required",
        requires_funds=False,
    ),
    EnvironmentDescriptor(
        name=DEVNET,
        display_name="Devnet",
        url="https://api.devnet.solana.com",
        description="Solana development network, free test tokens via airdrop",
        requires_funds=False,
    ),
    EnvironmentDescriptor(
        name=TESTNET,
        display_name="Testnet",
        url="https://api.testnet.solana.com",
        description="Solana test network, performance close to mainnet",
        requires_funds=False,
    ),
    EnvironmentDescriptor(
        name=MAINNET,
        display_name="Mainnet",
        url="https://api.mainnet-beta.solana.com",
        description="Production network, requires real SOL",
        requires_funds=True,
    ),
]

ENVIRONMENT_URLS: Dict[str, str] = {env.name: env.url for env in ENVIRONMENTS}


def descriptor_for(name: str) -> Optional[EnvironmentDescriptor]:
    for env in ENVIRONMENTS:
        if env.name == name:
            return env
    return None


def url_for_environment(tag: str) -> str:
    # Anything outside the table is treated as a literal custom endpoint
    return ENVIRONMENT_URLS.get(tag, tag)


def classify_url(url: str) -> ClusterInfo:
    """
    Substring classification, in priority order:
    loopback > devnet > testnet > mainnet > custom.
    """
    if any(host in url for host in LOOPBACK_HOSTS):
        return ClusterInfo(LOCALNET, url, True)
    for tag in (DEVNET, TESTNET, MAINNET):
        if tag in url:
            return ClusterInfo(tag, url, False)
    return ClusterInfo(CUSTOM, url, False)


def parse_rpc_url(config_report: str) -> Optional[str]:
    for line in config_report.splitlines():
        if RPC_URL_LABEL in line:
            return line.split(RPC_URL_LABEL, 1)[1].strip() or None
    return None


class EnvironmentResolver:
    def __init__(
        self,
        config: DeployConfig,
        runner: ToolRunner,
        settle_delay: float = SETTLE_DELAY_SECONDS,
    ):
        self.config = config
        self.runner = runner
        self.settle_delay = settle_delay

    def resolve_target_from_config(self) -> Optional[str]:
        target = self.config.target_env
        if target:
            logger.info("SOLANA_ENV=%s requested", target)
        return target

    async def current_cluster(self) -> ClusterInfo:
        logger.info("Reading Solana CLI configuration...")
        result = await self.runner.run(solana_cli.command(solana_cli.SOLANA, "config", "get"))
        if not result.ok:
            raise ConfigReadError(
                f"Unable to read Solana CLI config: {result.output or 'exit ' + str(result.returncode)}",
                {"returncode": result.returncode},
            )

        rpc_url = parse_rpc_url(result.stdout)
        if not rpc_url:
            raise ConfigReadError("Unable to find RPC URL in Solana CLI config", {"stdout": result.stdout})

        cluster = classify_url(rpc_url)
        logger.info("Current cluster: %s (%s)", cluster.name, cluster.url)
        return cluster

    async def switch_to(self, tag: str) -> None:
        url = url_for_environment(tag)
        logger.info("Switching to %s (%s)...", tag, url)
        result = await self.runner.run(
            solana_cli.command(solana_cli.SOLANA, "config", "set", "--url", url)
        )
        if not result.ok:
            logger.error("Environment switch failed: %s", result.output)
            raise EnvironmentSwitchError(tag, result.output or f"exit {result.returncode}")
        logger.info("Switched to %s (%s)", tag, url)
        # The CLI config is not guaranteed to be readable right away
        await asyncio.sleep(self.settle_delay)

    async def ensure_correct_environment(self) -> ClusterInfo:
        target = self.resolve_target_from_config()
        current = await self.current_cluster()
        if not target:
            return current

        if current.name == target:
            logger.info("Environment already set to %s", target)
            return current

        logger.warning("Current environment (%s) does not match target (%s)", current.name, target)
        if target == MAINNET:
            logger.warning("Switching to MAINNET: deployments will spend real SOL!")
        await self.switch_to(target)
        return await self.current_cluster()
