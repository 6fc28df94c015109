"""
Container lifecycle on a remote host.

``RunOptions`` is the typed form of a ``<runtime> run`` invocation; the
manager turns it into argv and hands it to the remote executor.
"""

import logging
from dataclasses import dataclass, field

from shipyard.config import settings
from shipyard.errors import ContainerError, RegistryAuthError, RemoteError

logger = logging.getLogger(__name__)

RESTART_ALWAYS = "always"
NETWORK_HOST = "host"


@dataclass(frozen=True)
class Mount:
    source: str
    target: str
    read_only: bool = False

    def to_arg(self) -> str:
        arg = f"{self.source}:{self.target}"
        return f"{arg}:ro" if self.read_only else arg


@dataclass
class RunOptions:
    name: str
    image: str
    network: str | None = None
    ports: list[str] = field(default_factory=list)
    env_file: str | None = None
    env: dict[str, str] = field(default_factory=dict)
    volumes: list[Mount] = field(default_factory=list)
    restart_policy: str | None = None

    def to_argv(self, runtime: str = "podman") -> list[str]:
        argv = [runtime, "run", "-d", "--name", self.name]
        if self.restart_policy:
            argv.append(f"--restart={self.restart_policy}")
        if self.network:
            argv.append(f"--network={self.network}")
        if self.env_file:
            argv += ["--env-file", self.env_file]
        for key, value in self.env.items():
            argv += ["-e", f"{key}={value}"]
        for port in self.ports:
            argv += ["-p", port]
        for mount in self.volumes:
            argv += ["-v", mount.to_arg()]
        argv.append(self.image)
        return argv


class ContainerManager:
    def __init__(self, executor, runtime: str | None = None):
        self.executor = executor
        self.runtime = runtime or settings.RUNTIME

    def _names(self, all_containers: bool, name: str, fmt: str = "{{.Names}}") -> list[str]:
        argv = [self.runtime, "ps"]
        if all_containers:
            argv.append("-a")
        argv += ["--filter", f"name=^{name}$", "--format", fmt]
        result = self.executor.run(argv)
        if not result.ok:
            raise ContainerError(f"Cannot list containers: {result.output.strip()}")
        return [line.strip() for line in result.output.splitlines() if line.strip()]

    def runtime_available(self) -> bool:
        result = self.executor.run(["sh", "-c", f"command -v {self.runtime}"])
        return result.ok

    def exists(self, name: str) -> bool:
        """True if a container with exactly this name exists, running or not."""
        return name in self._names(all_containers=True, name=name)

    def is_running(self, name: str) -> bool:
        return name in self._names(all_containers=False, name=name)

    def status(self, name: str) -> str:
        """Runtime status string (``Up 3 seconds``) or "" if not running."""
        result = self.executor.run(
            [self.runtime, "ps", "--filter", f"name=^{name}$", "--format", "{{.Names}}\t{{.Status}}"]
        )
        if not result.ok:
            return ""
        for line in result.output.splitlines():
            found, _, status = line.strip().partition("\t")
            if found == name:
                return status.strip()
        return ""

    def stop_and_remove(self, name: str) -> None:
        """Stop then remove; a missing container is not an error."""
        logger.debug(f"  Stopping and removing {name}")
        self.executor.run([self.runtime, "stop", name])
        self.executor.run([self.runtime, "rm", name])

    def run(self, options: RunOptions) -> str:
        """Create and start a container. Returns the container id."""
        result = self.executor.run(options.to_argv(self.runtime))
        if not result.ok:
            raise ContainerError(
                f"Failed to start container '{options.name}' from {options.image}: "
                f"{result.output.strip()}"
            )
        return result.output.strip().splitlines()[-1] if result.output.strip() else ""

    def logs(self, name: str, tail: int = 50) -> str:
        try:
            result = self.executor.run([self.runtime, "logs", "--tail", str(tail), name])
        except RemoteError as e:
            return f"<could not fetch logs: {e}>"
        return result.output

    def log_tail(self, name: str, tail: int = 50, level: int = logging.ERROR) -> None:
        """Write the last ``tail`` log lines of a container to the log."""
        logger.log(level, f"  Container logs ({name}, last {tail} lines):")
        for line in self.logs(name, tail).splitlines():
            logger.log(level, f"    {line}")

    def pull(self, image: str) -> None:
        result = self.executor.run([self.runtime, "pull", image])
        if not result.ok:
            raise ContainerError(f"Failed to pull {image}: {result.output.strip()}")

    def login(self, registry: str, username: str, token: str) -> None:
        """Log in with the token on stdin so it never lands in argv or logs."""
        result = self.executor.run(
            [self.runtime, "login", registry, "-u", username, "--password-stdin"],
            stdin=token + "\n",
        )
        if not result.ok:
            raise RegistryAuthError(f"Failed to login to container registry {registry}")

    def exec(self, name: str, *argv: str):
        return self.executor.run([self.runtime, "exec", name, *argv])

    def probe_http(self, port: int, path: str = "/") -> bool:
        """One health probe from the host itself, so host-networked ports need not be public."""
        url = f"http://localhost:{port}{path}"
        result = self.executor.run(["curl", "-f", "-s", "-o", "/dev/null", "--max-time", "5", url])
        return result.ok
