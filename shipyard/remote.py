"""
Remote execution over SSH.

``RemoteExecutor`` is the only thing in the project that talks to a remote
host. Commands are passed as argv lists and joined with ``shlex.join`` so
container names, paths and image references are always quoted. Secrets are
passed on stdin and never appear in the command line or the logs.
"""

import logging
import os
import shlex
import socket
import stat
from dataclasses import dataclass
from pathlib import Path
from typing import Sequence

import paramiko

from shipyard.config import settings
from shipyard.errors import ConnectivityError, RemoteCommandError, RemoteError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CommandResult:
    exit_status: int
    output: str = ""

    @property
    def ok(self) -> bool:
        return self.exit_status == 0

    @property
    def stdout(self) -> str:
        return self.output


def format_command(command: Sequence[str] | str) -> str:
    if isinstance(command, str):
        return command
    return shlex.join(command)


@dataclass(frozen=True)
class HostSpec:
    hostname: str
    port: int = 22
    username: str | None = None
    key_filenames: tuple[str, ...] = ()
    proxy_command: str | None = None


def resolve_host(host: str, ssh_config_path: str | None = None) -> HostSpec:
    """Resolve ``alias``, ``host``, ``user@host`` or ``user@host:port``.

    Aliases and per-host options come from the OpenSSH client config, as they
    would for a plain ``ssh <host>`` call.
    """
    username = None
    port = None
    if "@" in host:
        username, host = host.rsplit("@", 1)
    if host.count(":") == 1:
        host, port_str = host.split(":")
        port = int(port_str)

    lookup = {}
    config_path = Path(os.path.expanduser(ssh_config_path or settings.SSH_CONFIG))
    if config_path.is_file():
        lookup = paramiko.SSHConfig.from_path(str(config_path)).lookup(host)

    return HostSpec(
        hostname=lookup.get("hostname", host),
        port=port or int(lookup.get("port", 22)),
        username=username or lookup.get("user"),
        key_filenames=tuple(os.path.expanduser(f) for f in lookup.get("identityfile", [])),
        proxy_command=lookup.get("proxycommand"),
    )


class RemoteExecutor:
    def __init__(
        self,
        host: str,
        ssh_config_path: str | None = None,
        connect_timeout: int | None = None,
    ):
        self.host = host
        self.ssh_config_path = ssh_config_path
        self.connect_timeout = connect_timeout or settings.SSH_CONNECT_TIMEOUT

        self.ssh: paramiko.SSHClient | None = None
        self.sftp: paramiko.SFTPClient | None = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()

    # ── Connection ──

    def _connect(self) -> paramiko.SSHClient:
        if self.ssh is not None:
            return self.ssh

        spec = resolve_host(self.host, self.ssh_config_path)
        logger.debug(f"  SSH connecting to {spec.hostname}:{spec.port} as {spec.username or '<default>'}")
        client = paramiko.SSHClient()
        client.load_system_host_keys()
        client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        try:
            client.connect(
                hostname=spec.hostname,
                port=spec.port,
                username=spec.username,
                key_filename=list(spec.key_filenames) or None,
                sock=paramiko.ProxyCommand(spec.proxy_command) if spec.proxy_command else None,
                timeout=self.connect_timeout,
                banner_timeout=self.connect_timeout * 2,
            )
        except (paramiko.SSHException, OSError, EOFError) as e:
            client.close()
            raise ConnectivityError(f"Cannot connect to {self.host}: {e}") from e

        self.ssh = client
        return client

    def _sftp(self) -> paramiko.SFTPClient:
        if self.sftp is None:
            client = self._connect()
            try:
                self.sftp = client.open_sftp()
            except (paramiko.SSHException, OSError, EOFError) as e:
                raise ConnectivityError(f"Cannot open SFTP session on {self.host}: {e}") from e
        return self.sftp

    def close(self) -> None:
        if self.sftp is not None:
            self.sftp.close()
            self.sftp = None
        if self.ssh is not None:
            self.ssh.close()
            self.ssh = None
            logger.debug(f"  Connection to {self.host} closed")

    def check_connection(self) -> None:
        """Raise ConnectivityError unless a trivial command round-trips."""
        try:
            result = self.run(["echo", "SSH connection successful"])
        except RemoteError as e:
            raise ConnectivityError(f"Cannot connect to {self.host}: {e}") from e
        if not result.ok:
            raise ConnectivityError(f"Cannot connect to {self.host}: {result.output.strip()}")

    # ── Commands ──

    def run(
        self,
        command: Sequence[str] | str,
        stdin: str | None = None,
        check: bool = False,
        timeout: float | None = None,
    ) -> CommandResult:
        """Run a command and return its exit status and combined output."""
        cmd_str = format_command(command)
        logger.debug(f"  $ {cmd_str}")

        try:
            transport = self._connect().get_transport()
            if transport is None or not transport.is_active():
                raise ConnectivityError(f"SSH transport to {self.host} is not active")
            channel = transport.open_session(timeout=self.connect_timeout)
        except (paramiko.SSHException, OSError, EOFError) as e:
            raise ConnectivityError(f"Cannot open a session on {self.host}: {e}") from e

        try:
            channel.set_combine_stderr(True)
            if timeout is not None:
                channel.settimeout(timeout)
            channel.exec_command(cmd_str)
            if stdin is not None:
                channel.sendall(stdin.encode())
            channel.shutdown_write()
            # Read before recv_exit_status, otherwise large output deadlocks
            output = channel.makefile("rb").read().decode("utf-8", errors="replace")
            exit_status = channel.recv_exit_status()
        except socket.timeout:
            raise RemoteError(f"Command timed out after {timeout}s: {cmd_str}")
        except (paramiko.SSHException, OSError, EOFError) as e:
            raise ConnectivityError(f"Lost connection to {self.host} while running {cmd_str}: {e}") from e
        finally:
            channel.close()

        result = CommandResult(exit_status=exit_status, output=output)
        if check and not result.ok:
            logger.debug(f"  Command failed (rc={exit_status}): {output.strip()}")
            raise RemoteCommandError(cmd_str, exit_status, output)
        return result

    # ── Files ──

    def write_file(self, path: str, content: str) -> None:
        logger.debug(f"  Writing {path} ({len(content)} bytes)")
        try:
            with self._sftp().open(path, "w") as f:
                f.write(content)
        except (IOError, paramiko.SSHException, EOFError) as e:
            raise RemoteError(f"Cannot write {path} on {self.host}: {e}") from e

    def read_file(self, path: str) -> str:
        try:
            with self._sftp().open(path, "r") as f:
                return f.read().decode("utf-8")
        except (IOError, paramiko.SSHException, EOFError) as e:
            raise RemoteError(f"Cannot read {path} on {self.host}: {e}") from e

    def file_exists(self, path: str) -> bool:
        try:
            self._sftp().stat(path)
        except IOError:
            return False
        return True

    def upload_dir(self, local_dir: str | Path, remote_dir: str) -> int:
        """Copy a local directory tree, dotfiles included, over ``remote_dir``.

        Existing remote files are overwritten. Returns the number of files copied.
        """
        local_dir = Path(local_dir)
        directories = [remote_dir]
        files = []
        for root, dirs, names in os.walk(local_dir):
            rel = Path(root).relative_to(local_dir)
            for d in dirs:
                directories.append(f"{remote_dir}/{(rel / d).as_posix()}")
            for name in names:
                files.append((Path(root) / name, f"{remote_dir}/{(rel / name).as_posix()}"))

        self.run(["mkdir", "-p", *directories], check=True)

        sftp = self._sftp()
        for local_path, remote_path in files:
            logger.debug(f"  Copying {local_path} -> {remote_path}")
            try:
                sftp.put(str(local_path), remote_path)
                mode = stat.S_IMODE(local_path.stat().st_mode)
                sftp.chmod(remote_path, mode)
            except (IOError, paramiko.SSHException, EOFError) as e:
                raise RemoteError(f"Cannot upload {local_path} to {self.host}:{remote_path}: {e}") from e
        return len(files)
