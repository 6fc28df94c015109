class ShipyardError(Exception):
    """Base class for every error the deployment tooling raises on purpose."""
    pass


class ConfigError(ShipyardError):
    """Missing or invalid target configuration."""
    pass


# ── Remote execution ──

class RemoteError(ShipyardError):
    pass


class ConnectivityError(RemoteError):
    """The SSH host could not be reached or refused the session."""
    pass


class RemoteCommandError(RemoteError):
    """A remote command exited non-zero while the caller required success."""

    def __init__(self, command: str, exit_status: int, output: str = ""):
        self.command = command
        self.exit_status = exit_status
        self.output = output
        detail = output.strip().splitlines()[-1] if output.strip() else "no output"
        super().__init__(f"Command failed (rc={exit_status}): {command}: {detail}")


# ── Deployment ──

class DeploymentError(ShipyardError):
    """Raised when a deployment step fails.

    ``state`` names the orchestrator state the failure happened in, when the
    failure belongs to a blue-green attempt.
    """

    def __init__(self, message: str, state=None):
        super().__init__(message)
        self.state = state


class PreconditionError(DeploymentError):
    pass


class RegistryAuthError(DeploymentError):
    pass


class ContainerError(DeploymentError):
    pass


class HealthCheckFailed(DeploymentError):
    pass


class ProxyError(DeploymentError):
    pass


class ProxyReloadError(ProxyError):
    """The routing file was edited but the proxy refused to reload it.

    ``restored`` tells whether the previous file content was written back and
    reloaded successfully.
    """

    def __init__(self, message: str, restored: bool, state=None):
        super().__init__(message, state=state)
        self.restored = restored


class CanonicalVerificationError(DeploymentError):
    """The canonical container is not running after the incumbent was retired."""
    pass
