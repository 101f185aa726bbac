from __future__ import annotations

import os
import shutil
from pathlib import Path
from typing import List

SOLANA = "solana"
ANCHOR = "anchor"
TEST_VALIDATOR = "solana-test-validator"

# Per-tool executable overrides
PATH_OVERRIDES = {
    SOLANA: "SOLANA_CLI_PATH",
    ANCHOR: "ANCHOR_CLI_PATH",
    TEST_VALIDATOR: "SOLANA_TEST_VALIDATOR_PATH",
}


def resolve_tool(name: str) -> str:
    """
    Resolve a CLI tool to something subprocess can launch.
    Prefers an explicit path from the tool's env var, otherwise falls back to
    PATH lookups (including the .cmd shim on Windows). When nothing is found the
    bare name is returned so the launch fails with a clear FileNotFoundError.
    """
    candidates: list[str] = []
    env_key = PATH_OVERRIDES.get(name)
    for value in (
        os.getenv(env_key) if env_key else None,
        shutil.which(name),
        shutil.which(f"{name}.cmd"),
    ):
        if not value:
            continue
        path = Path(value).expanduser()
        if not path.exists():
            continue
        candidates.append(str(path))

    if candidates:
        return candidates[0]
    return name


def command(name: str, *args: str) -> List[str]:
    return [resolve_tool(name), *args]
