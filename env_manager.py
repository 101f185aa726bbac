"""
Non-interactive Solana environment helper.

Usage (from the Anchor workspace root):
    python env_manager.py show
    python env_manager.py list
    python env_manager.py switch devnet
    python env_manager.py balance
    python env_manager.py airdrop 2
    python env_manager.py health
    python env_manager.py history --limit 5
    python env_manager.py history --last-program-id --cluster devnet
"""
from __future__ import annotations

import argparse
import asyncio
import logging
import os
from pathlib import Path
from typing import Optional

import requests

import solana_cli
from cluster_env import (
    ENVIRONMENTS,
    EnvironmentResolver,
    classify_url,
    descriptor_for,
    parse_rpc_url,
)
from deploy_config import DEFAULT_HISTORY_DIR, DeployConfig
from deploy_errors import DeploymentError
from deploy_history import DeploymentHistory
from tool_runner import ToolRunner

logger = logging.getLogger(__name__)

HEALTH_TIMEOUT = 10
DEFAULT_AIRDROP_SOL = 2.0


class EnvironmentManager:
    def __init__(self, runner: Optional[ToolRunner] = None):
        self.runner = runner or ToolRunner()

    async def current_environment(self) -> Optional[str]:
        """Name of the well-known environment the CLI points at, or None."""
        result = await self.runner.run(solana_cli.command(solana_cli.SOLANA, "config", "get"))
        if not result.ok:
            return None
        url = parse_rpc_url(result.stdout)
        if not url:
            return None
        name = classify_url(url).name
        return name if descriptor_for(name) else None

    async def show_config(self) -> str:
        result = await self.runner.run(solana_cli.command(solana_cli.SOLANA, "config", "get"))
        if not result.ok:
            raise DeploymentError(f"Unable to read config: {result.output}")
        return result.stdout

    async def list_environments(self) -> str:
        current = await self.current_environment()
        lines = []
        for idx, env in enumerate(ENVIRONMENTS, start=1):
            marker = "  <- current" if env.name == current else ""
            lines.append(f"{idx}. {env.display_name} [{env.name}]{marker}")
            lines.append(f"   {env.description}")
            lines.append(f"   RPC: {env.url}")
        return "\n".join(lines)

    async def switch(self, name: str) -> None:
        env = descriptor_for(name)
        if env is None:
            raise DeploymentError(
                f"Unknown environment '{name}'. Choose one of: "
                + ", ".join(e.name for e in ENVIRONMENTS)
            )
        resolver = EnvironmentResolver(DeployConfig(), self.runner, settle_delay=0)
        await resolver.switch_to(env.name)
        if env.requires_funds:
            logger.warning("This is the production network: deployments spend real SOL!")

    async def balance(self) -> Optional[str]:
        result = await self.runner.run(solana_cli.command(solana_cli.SOLANA, "balance"))
        if not result.ok:
            logger.warning("Unable to fetch balance: %s", result.output)
            return None
        return result.stdout.strip()

    async def airdrop(self, amount: float = DEFAULT_AIRDROP_SOL) -> bool:
        current = await self.current_environment()
        env = descriptor_for(current) if current else None
        if env is not None and env.requires_funds:
            logger.error("Airdrops are not available on mainnet; acquire SOL through an exchange")
            return False

        result = await self.runner.run(
            solana_cli.command(solana_cli.SOLANA, "airdrop", _format_amount(amount))
        )
        if result.ok:
            logger.info("Airdrop succeeded: %s", result.stdout.strip())
            return True

        logger.error("Airdrop failed: %s", result.output)
        if "airdrop request limit" in result.output:
            logger.info("The faucet rate limit was probably hit; try again later")
        return False

    async def rpc_url(self) -> Optional[str]:
        result = await self.runner.run(solana_cli.command(solana_cli.SOLANA, "config", "get"))
        return parse_rpc_url(result.stdout) if result.ok else None


def _format_amount(amount: float) -> str:
    return str(int(amount)) if float(amount).is_integer() else str(amount)


def rpc_health(url: str, timeout: int = HEALTH_TIMEOUT) -> dict:
    """
    Ask the RPC node for getHealth. Returns a small summary dict; transport
    problems are reported in it rather than raised.
    """
    payload = {"jsonrpc": "2.0", "id": 1, "method": "getHealth"}
    try:
        resp = requests.post(url, json=payload, timeout=timeout)
    except requests.exceptions.RequestException as exc:
        return {"url": url, "healthy": False, "error": str(exc)}
    if resp.status_code != 200:
        return {"url": url, "healthy": False, "error": f"RPC status {resp.status_code}", "body": resp.text}
    try:
        data = resp.json()
    except ValueError:
        data = None
    if not isinstance(data, dict):
        return {"url": url, "healthy": False, "error": "invalid JSON response", "body": resp.text}
    if data.get("result") == "ok":
        return {"url": url, "healthy": True}
    error = data.get("error")
    if isinstance(error, dict):
        message = error.get("message")
    else:
        message = str(error) if error else None
    return {"url": url, "healthy": False, "error": message or "unhealthy"}


def format_history(entries: list) -> str:
    if not entries:
        return "No deployments recorded yet."
    lines = []
    for entry in entries:
        parts = [
            entry.get("timestamp", ""),
            entry.get("status", ""),
            entry.get("cluster", ""),
        ]
        if entry.get("program_id"):
            parts.append(f"program={entry['program_id']}")
        if entry.get("duration_seconds") is not None:
            parts.append(f"{entry['duration_seconds']}s")
        if entry.get("error_kind"):
            parts.append(f"error={entry['error_kind']}")
        lines.append("- " + " | ".join(p for p in parts if p))
    return "\n".join(lines)


async def dispatch(args: argparse.Namespace, manager: EnvironmentManager) -> int:
    if args.command == "show":
        print(await manager.show_config())
    elif args.command == "list":
        print(await manager.list_environments())
    elif args.command == "switch":
        await manager.switch(args.environment)
        balance = await manager.balance()
        if balance:
            print(f"Balance: {balance}")
    elif args.command == "balance":
        balance = await manager.balance()
        if balance is None:
            return 1
        print(balance)
    elif args.command == "airdrop":
        ok = await manager.airdrop(args.amount)
        balance = await manager.balance() if ok else None
        if balance:
            print(f"Balance: {balance}")
        return 0 if ok else 1
    elif args.command == "health":
        url = args.url or await manager.rpc_url()
        if not url:
            logger.error("No RPC URL configured")
            return 1
        summary = rpc_health(url)
        print(f"{summary['url']}: {'healthy' if summary['healthy'] else 'unhealthy'}")
        if summary.get("error"):
            print(f"  {summary['error']}")
        return 0 if summary["healthy"] else 1
    elif args.command == "history":
        # read-only: never create the history directory
        history = DeploymentHistory(args.history_dir) if args.history_dir.is_dir() else None
        if args.last_program_id:
            program_id = history.last_program_id(args.cluster) if history else None
            if program_id is None:
                logger.error("No successful deployment recorded%s", f" on {args.cluster}" if args.cluster else "")
                return 1
            print(program_id)
        else:
            print(format_history(history.recent(limit=args.limit) if history else []))
    return 0


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Solana environment helper")
    sub = parser.add_subparsers(dest="command", required=True)
    sub.add_parser("show", help="Print the current Solana CLI config")
    sub.add_parser("list", help="List the well-known environments")
    switch = sub.add_parser("switch", help="Point the Solana CLI at an environment")
    switch.add_argument("environment", choices=[env.name for env in ENVIRONMENTS])
    sub.add_parser("balance", help="Show the wallet balance")
    airdrop = sub.add_parser("airdrop", help="Request test SOL (not available on mainnet)")
    airdrop.add_argument("amount", nargs="?", type=float, default=DEFAULT_AIRDROP_SOL)
    health = sub.add_parser("health", help="Check RPC health of the active endpoint")
    health.add_argument("--url", help="Endpoint to check instead of the configured one")
    history = sub.add_parser("history", help="Show recent deployments")
    history.add_argument(
        "--history-dir",
        type=Path,
        default=Path(os.getenv("SOLANA_DEPLOY_HISTORY_DIR") or DEFAULT_HISTORY_DIR),
    )
    history.add_argument("--limit", type=int, default=10)
    history.add_argument(
        "--last-program-id",
        action="store_true",
        help="Print only the program id of the latest successful deployment",
    )
    history.add_argument("--cluster", help="Restrict --last-program-id to one cluster")
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.INFO, format="%(asctime)s - %(levelname)s - %(message)s")
    try:
        return asyncio.run(dispatch(args, EnvironmentManager()))
    except DeploymentError as exc:
        logger.error("%s", exc)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
