from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

from cluster_env import ClusterInfo


class DeployState(str, Enum):
    START = "start"
    ENVIRONMENT_RESOLVED = "environment_resolved"
    VALIDATOR_READY = "validator_ready"
    NETWORK_READY = "network_ready"
    BUILT = "built"
    DEPLOYED = "deployed"
    VERIFIED = "verified"
    DONE = "done"
    ABORTED = "aborted"


@dataclass
class DeploymentRun:
    """
    Mutable state of a single deploy() call.
    `validator_process` is only set when this run spawned the validator; a
    validator found already running is never owned and never stopped.
    """

    cluster: ClusterInfo
    validator_process: Optional[Any] = None
    started_at: float = field(default_factory=time.monotonic)
    _program_id: Optional[str] = field(default=None, repr=False)

    @property
    def program_id(self) -> Optional[str]:
        return self._program_id

    @program_id.setter
    def program_id(self, value: Optional[str]) -> None:
        if self._program_id is not None:
            raise ValueError("program_id is already set for this run")
        self._program_id = value

    @property
    def owns_validator(self) -> bool:
        return self.validator_process is not None
