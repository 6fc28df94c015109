"""
Shared fixtures.

``FakeHost`` stands in for ``RemoteExecutor``: it interprets the podman,
curl and shell commands the deployment code sends and keeps a small model of
the remote host (containers, files, the live proxy route) in memory.
"""

import re
import shlex
from pathlib import Path

import pytest

from deploy.proxy import render_caddyfile
from shipyard.errors import ConnectivityError, RemoteCommandError, RemoteError
from shipyard.remote import CommandResult
from shipyard.targets import Target


class FakeHost:
    def __init__(self, runtime: str = "podman"):
        self.runtime = runtime
        self.reachable = True
        self.runtime_installed = True
        self.login_ok = True

        self.containers: dict[str, dict] = {}
        self.files: dict[str, str] = {}
        self.commands: list[list[str]] = []
        self.stdin: list[str] = []
        self.uploads: list[tuple[str, str]] = []
        self.pulled: list[str] = []
        self.live_port: int | None = None

        # Containers that fail to be created / exit right after starting
        self.fail_start: set[str] = set()
        self.crash_on_start: set[str] = set()
        # name -> number of failing probes before the container answers
        self.warmup: dict[str, int] = {}
        self.never_healthy: set[str] = set()
        self.fail_pull: set[str] = set()
        # Results of successive `caddy reload` calls; empty means success
        self.reload_results: list[bool] = []

        self._next_id = 1

    # ── RemoteExecutor interface ──

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()

    def close(self):
        pass

    def check_connection(self):
        if not self.reachable:
            raise ConnectivityError("Cannot connect to fake host: connection refused")

    def run(self, command, stdin=None, check=False, timeout=None) -> CommandResult:
        if not self.reachable:
            raise ConnectivityError("Cannot connect to fake host: connection refused")
        argv = list(command) if not isinstance(command, str) else shlex.split(command)
        self.commands.append(argv)
        if stdin is not None:
            self.stdin.append(stdin)

        result = self._dispatch(argv, stdin)
        if check and not result.ok:
            raise RemoteCommandError(shlex.join(argv), result.exit_status, result.output)
        return result

    def write_file(self, path: str, content: str) -> None:
        if not self.reachable:
            raise RemoteError(f"Cannot write {path}")
        self.files[path] = content

    def read_file(self, path: str) -> str:
        if path not in self.files:
            raise RemoteError(f"Cannot read {path}: No such file")
        return self.files[path]

    def file_exists(self, path: str) -> bool:
        return path in self.files

    def upload_dir(self, local_dir, remote_dir: str) -> int:
        count = 0
        for path in sorted(Path(local_dir).rglob("*")):
            if path.is_file():
                rel = path.relative_to(local_dir).as_posix()
                self.files[f"{remote_dir}/{rel}"] = path.read_text()
                count += 1
        self.uploads.append((str(local_dir), remote_dir))
        return count

    # ── Helpers for tests ──

    def add_container(self, name: str, image: str = "ghcr.io/acme/app1:old", port: int | None = None,
                      running: bool = True) -> None:
        self.containers[name] = {"image": image, "port": port, "running": running, "argv": []}

    def running(self, name: str) -> bool:
        c = self.containers.get(name)
        return bool(c and c["running"])

    def commands_for(self, verb: str) -> list[list[str]]:
        return [c for c in self.commands if c[:2] == [self.runtime, verb]]

    # ── Command interpreter ──

    def _dispatch(self, argv, stdin) -> CommandResult:
        program = argv[0]
        if program == "echo":
            return CommandResult(0, " ".join(argv[1:]) + "\n")
        if program == "sh" and argv[1:2] == ["-c"]:
            if argv[2] == f"command -v {self.runtime}" and self.runtime_installed:
                return CommandResult(0, f"/usr/bin/{self.runtime}\n")
            return CommandResult(1, "")
        if program == "mkdir":
            return CommandResult(0, "")
        if program == "curl":
            return self._curl(argv[-1])
        if program == self.runtime:
            handler = getattr(self, f"_podman_{argv[1]}", None)
            if handler is not None:
                return handler(argv[2:], stdin)
        return CommandResult(127, f"{program}: command not found\n")

    def _curl(self, url: str) -> CommandResult:
        match = re.match(r"http://localhost:(\d+)(/.*)?$", url)
        port = int(match.group(1))
        for name, c in self.containers.items():
            if not c["running"] or c["port"] != port or name in self.never_healthy:
                continue
            if self.warmup.get(name, 0) > 0:
                self.warmup[name] -= 1
                break
            return CommandResult(0, "")
        return CommandResult(7, "")

    def _podman_ps(self, args, stdin) -> CommandResult:
        show_all = "-a" in args
        name_filter = args[args.index("--filter") + 1].removeprefix("name=")
        fmt = args[args.index("--format") + 1]
        pattern = re.compile(name_filter)
        lines = []
        for name, c in self.containers.items():
            if not pattern.search(name) or not (show_all or c["running"]):
                continue
            status = "Up 2 seconds" if c["running"] else "Exited (1) 1 second ago"
            lines.append(fmt.replace("{{.Names}}", name).replace("{{.Status}}", status))
        return CommandResult(0, "".join(line + "\n" for line in lines))

    def _podman_run(self, args, stdin) -> CommandResult:
        name = args[args.index("--name") + 1]
        if name in self.fail_start:
            return CommandResult(125, f"Error: cannot start {name}: port already in use\n")
        if name in self.containers:
            return CommandResult(125, f'Error: the container name "{name}" is already in use\n')
        port = None
        for i, arg in enumerate(args):
            if arg == "-e" and args[i + 1].startswith("PORT="):
                port = int(args[i + 1].split("=", 1)[1])
        self.containers[name] = {
            "image": args[-1],
            "port": port,
            "running": name not in self.crash_on_start,
            "argv": [self.runtime, "run", *args],
        }
        cid = f"{self._next_id:064x}"
        self._next_id += 1
        return CommandResult(0, cid + "\n")

    def _podman_stop(self, args, stdin) -> CommandResult:
        name = args[0]
        if name not in self.containers:
            return CommandResult(125, f"Error: no container with name or ID \"{name}\" found\n")
        self.containers[name]["running"] = False
        return CommandResult(0, name + "\n")

    def _podman_rm(self, args, stdin) -> CommandResult:
        name = args[0]
        if name not in self.containers:
            return CommandResult(1, f"Error: no container with name or ID \"{name}\" found\n")
        if self.containers[name]["running"]:
            return CommandResult(2, f"Error: cannot remove running container {name}\n")
        del self.containers[name]
        return CommandResult(0, name + "\n")

    def _podman_logs(self, args, stdin) -> CommandResult:
        name = args[-1]
        if name not in self.containers:
            return CommandResult(125, f"Error: no container with name or ID \"{name}\" found\n")
        return CommandResult(0, f"{name} booting\n{name} listening\n")

    def _podman_pull(self, args, stdin) -> CommandResult:
        image = args[0]
        if image in self.fail_pull:
            return CommandResult(125, f"Error: initializing source docker://{image}: manifest unknown\n")
        self.pulled.append(image)
        return CommandResult(0, "Writing manifest to image destination\n")

    def _podman_login(self, args, stdin) -> CommandResult:
        if self.login_ok and stdin:
            return CommandResult(0, "Login Succeeded!\n")
        return CommandResult(125, "Error: logging into registry: invalid username/password\n")

    def _podman_exec(self, args, stdin) -> CommandResult:
        name = args[0]
        if not self.running(name):
            return CommandResult(125, f"Error: container {name} is not running\n")
        if args[1:3] == ["caddy", "reload"]:
            ok = self.reload_results.pop(0) if self.reload_results else True
            if not ok:
                return CommandResult(1, "Error: adapting config using caddyfile: unexpected token\n")
            caddyfile = next((v for k, v in self.files.items() if k.endswith(f"/{name}/Caddyfile")), "")
            match = re.search(r"localhost:(\d+)", caddyfile)
            self.live_port = int(match.group(1)) if match else None
            return CommandResult(0, "")
        return CommandResult(0, "")


class Clock:
    """Manual monotonic clock; ``sleep`` advances it."""

    def __init__(self):
        self.now = 0.0
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


@pytest.fixture
def host():
    return FakeHost()


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def make_target(tmp_path):
    local_dir = tmp_path / "targets" / "app1"
    local_dir.mkdir(parents=True)
    (local_dir / ".env").write_text("DATABASE_URL=postgres://db/app1\n")

    def _make(**overrides):
        values = {
            "SSH_HOST": "deploy@app1.example.com",
            "CONTAINER_NAME": "app1",
            "CONTAINER_IMAGE": "ghcr.io/acme/app1:old",
            "APP_PORT": 3000,
            "ALT_PORT": 3001,
            "HEALTH_CHECK_PATH": "/",
            "HEALTH_CHECK_TIMEOUT": 30,
        }
        values.update(overrides)
        return Target(name=values.pop("name", "app1"), local_dir=local_dir, **values)

    return _make


@pytest.fixture
def target(make_target):
    return make_target()


@pytest.fixture
def proxied_host(host, target):
    """Host with a running proxy routing to the canonical port and a healthy incumbent."""
    host.add_container(target.proxy_name, image="docker.io/library/caddy:latest")
    host.files[target.caddyfile_path] = render_caddyfile(target, target.app_port)
    host.live_port = target.app_port
    host.add_container(target.container_name, port=target.app_port)
    return host
