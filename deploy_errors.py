"""
Exception hierarchy for deployment failures.

Every fatal pipeline failure is a DeploymentError subclass. Verification and
cleanup problems are never raised; they are logged as warnings where they
happen.
"""
from typing import Any, Dict, Optional

INSUFFICIENT_FUNDS = "insufficient-funds"
CONNECTION_REFUSED = "connection-refused"
UNCLASSIFIED = "unclassified"


class DeploymentError(Exception):
    """Base exception for all deployment errors."""

    kind = "deployment"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)


class ConfigReadError(DeploymentError):
    """The active RPC endpoint could not be read from the Solana CLI config."""

    kind = "config-read"


class EnvironmentSwitchError(DeploymentError):
    """`solana config set` failed."""

    kind = "environment-switch"

    def __init__(self, target: str, output: str):
        super().__init__(
            f"Failed to switch to {target}: {output}",
            {"target": target, "output": output},
        )
        self.target = target
        self.output = output


class ValidatorStartError(DeploymentError):
    """The local validator could not be spawned or died during startup."""

    kind = "validator-start"


class NetworkTimeoutError(DeploymentError):
    """The readiness probe ran out of attempts."""

    kind = "network-timeout"

    def __init__(self, attempts: int, last_output: str = ""):
        super().__init__(
            f"Network not reachable after {attempts} attempts",
            {"attempts": attempts, "last_output": last_output},
        )
        self.attempts = attempts


class BuildError(DeploymentError):
    """`anchor build` failed; message is the tool's error text verbatim."""

    kind = "build"

    def __init__(self, output: str):
        super().__init__(output, {"output": output})
        self.output = output


class DeployError(DeploymentError):
    """`anchor deploy` failed. Carries a classification and a remediation hint."""

    kind = "deploy"

    def __init__(self, output: str, failure: str = UNCLASSIFIED, hint: Optional[str] = None):
        message = output
        if hint:
            message = f"{output}\nHint: {hint}"
        super().__init__(message, {"failure": failure, "hint": hint, "output": output})
        self.output = output
        self.failure = failure
        self.hint = hint
