from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional

DEFAULT_LOCAL_RETRIES = 10
DEFAULT_REMOTE_RETRIES = 5
DEFAULT_HISTORY_DIR = Path(".anchor") / "deploy-history"


def _int_env(env: Mapping[str, str], key: str, default: int) -> int:
    value = (env.get(key) or "").strip()
    return int(value) if value.isdigit() and int(value) > 0 else default


@dataclass(frozen=True)
class DeployConfig:
    """
    Everything the orchestrator needs from the process environment, read once
    at startup so the pipeline never consults os.environ mid-run.
    """

    target_env: Optional[str] = None
    ci: bool = False
    auto_cleanup: bool = False
    local_retries: int = DEFAULT_LOCAL_RETRIES
    remote_retries: int = DEFAULT_REMOTE_RETRIES
    history_dir: Optional[Path] = None
    verbose: bool = False

    @property
    def should_cleanup(self) -> bool:
        # Unattended runs always tear down the validator they started
        return self.ci or self.auto_cleanup

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None, **overrides) -> "DeployConfig":
        env = os.environ if env is None else env
        history = env.get("SOLANA_DEPLOY_HISTORY_DIR")
        values = {
            "target_env": env.get("SOLANA_ENV") or None,
            "ci": bool(env.get("CI")),
            "auto_cleanup": bool(env.get("AUTO_CLEANUP")),
            "local_retries": _int_env(env, "SOLANA_DEPLOY_LOCAL_RETRIES", DEFAULT_LOCAL_RETRIES),
            "remote_retries": _int_env(env, "SOLANA_DEPLOY_REMOTE_RETRIES", DEFAULT_REMOTE_RETRIES),
            "history_dir": Path(history).expanduser() if history else DEFAULT_HISTORY_DIR,
            "verbose": bool(env.get("SOLANA_DEPLOY_VERBOSE")),
        }
        values.update({key: value for key, value in overrides.items() if value is not None})
        return cls(**values)
