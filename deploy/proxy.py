"""
Caddy reverse proxy for a target.

The proxy owns one mutable fact per target: the backend port in the
``reverse_proxy localhost:<port>`` line of its Caddyfile. ``point_to`` is the
only writer. A file edit is only live after ``caddy reload`` succeeds, so the
two always happen as a pair.
"""

import logging
import re
import time

import requests

from deploy.containers import NETWORK_HOST, RESTART_ALWAYS, ContainerManager, Mount, RunOptions
from shipyard import metrics
from shipyard.config import settings
from shipyard.errors import PreconditionError, ProxyError, ProxyReloadError, RemoteError
from shipyard.remote import resolve_host
from shipyard.targets import Target

logger = logging.getLogger(__name__)

ROUTE_PATTERN = re.compile(r"localhost:\d+")
CONTAINER_CADDYFILE = "/etc/caddy/Caddyfile"

DOMAIN_TEMPLATE = """{domain} {{
    reverse_proxy localhost:{port}

    encode gzip

    header {{
        Strict-Transport-Security "max-age=31536000; includeSubDomains; preload"
        X-Content-Type-Options "nosniff"
        X-Frame-Options "SAMEORIGIN"
    }}
}}
"""

HTTP_TEMPLATE = """:80 {{
    reverse_proxy localhost:{port}
}}
"""


def render_caddyfile(target: Target, port: int | None = None) -> str:
    """Domain set: virtual host with automatic HTTPS and security headers.
    Domain unset: plain HTTP listener on port 80."""
    port = port or target.app_port
    if target.domain:
        return DOMAIN_TEMPLATE.format(domain=target.domain, port=port)
    return HTTP_TEMPLATE.format(port=port)


def parse_backend_port(caddyfile: str) -> int | None:
    match = ROUTE_PATTERN.search(caddyfile)
    if match is None:
        return None
    return int(match.group(0).split(":")[1])


class ProxyController:
    def __init__(
        self,
        executor,
        containers: ContainerManager | None = None,
        image: str | None = None,
        settle_seconds: float | None = None,
        sleep=time.sleep,
    ):
        self.executor = executor
        self.containers = containers or ContainerManager(executor)
        self.image = image or settings.PROXY_IMAGE
        self.settle_seconds = settings.PROXY_SETTLE_SECONDS if settle_seconds is None else settle_seconds
        self.sleep = sleep

    # ── Queries ──

    def is_running(self, target: Target) -> bool:
        return self.containers.is_running(target.proxy_name)

    def current_port(self, target: Target) -> int | None:
        """Backend port recorded in the persisted Caddyfile."""
        return parse_backend_port(self.executor.read_file(target.caddyfile_path))

    # ── Setup ──

    def run_options(self, target: Target) -> RunOptions:
        return RunOptions(
            name=target.proxy_name,
            image=self.image,
            network=NETWORK_HOST,
            restart_policy=RESTART_ALWAYS,
            volumes=[
                Mount(target.caddyfile_path, CONTAINER_CADDYFILE, read_only=True),
                Mount(f"{target.proxy_dir}/data", "/data"),
                Mount(f"{target.proxy_dir}/config", "/config"),
            ],
        )

    def ensure_running(self, target: Target) -> str:
        """(Re)create the proxy container with a freshly generated Caddyfile.

        Returns the proxy's runtime status string.
        """
        total = 6
        logger.info(f"[1/{total}] Checking SSH connection...")
        self.executor.check_connection()
        logger.info("  ✓ SSH connection verified")

        logger.info(f"[2/{total}] Checking {self.containers.runtime} installation...")
        if not self.containers.runtime_available():
            raise PreconditionError(
                f"{self.containers.runtime} is not installed on {target.ssh_host}"
            )
        logger.info(f"  ✓ {self.containers.runtime} available")

        logger.info(f"[3/{total}] Creating Caddy configuration directory...")
        self.executor.run(
            ["mkdir", "-p", f"{target.proxy_dir}/data", f"{target.proxy_dir}/config"], check=True
        )
        logger.info(f"  ✓ Directory created: {target.proxy_dir}")

        logger.info(f"[4/{total}] Generating Caddyfile...")
        if not target.domain:
            logger.warning("  DOMAIN not set. Caddy will serve plain HTTP on port 80.")
        self.executor.write_file(target.caddyfile_path, render_caddyfile(target, target.app_port))
        logger.info(f"  ✓ Caddyfile created (proxying to localhost:{target.app_port})")

        logger.info(f"[5/{total}] Checking for existing Caddy container...")
        if self.containers.exists(target.proxy_name):
            logger.info("  Caddy container exists. Stopping and removing...")
            self.containers.stop_and_remove(target.proxy_name)
            logger.info("  ✓ Old container removed")

        logger.info(f"[6/{total}] Deploying Caddy container...")
        self.containers.run(self.run_options(target))
        self.sleep(self.settle_seconds)

        status = self.containers.status(target.proxy_name)
        if not status:
            self.containers.log_tail(target.proxy_name, tail=30)
            raise ProxyError(f"Caddy container '{target.proxy_name}' is not running")

        metrics.record_backend_port(target.name, target.app_port)
        logger.info(f"  ✓ Caddy is running: {status}")
        return status

    # ── Traffic switching ──

    def _reload(self, target: Target):
        return self.containers.exec(
            target.proxy_name, "caddy", "reload", "--config", CONTAINER_CADDYFILE
        )

    def point_to(self, target: Target, port: int) -> None:
        """Rewrite the routing fact to ``port`` and reload the live proxy.

        If the reload fails, the previous file is written back and reloaded,
        and ProxyReloadError is raised either way.
        """
        original = self.executor.read_file(target.caddyfile_path)
        if parse_backend_port(original) is None:
            raise ProxyError(f"No 'localhost:<port>' route found in {target.caddyfile_path}")

        updated = ROUTE_PATTERN.sub(f"localhost:{port}", original)
        self.executor.write_file(target.caddyfile_path, updated)

        result = self._reload(target)
        if result.ok:
            metrics.record_backend_port(target.name, port)
            logger.debug(f"  Caddy reloaded, routing to localhost:{port}")
            return

        logger.error(f"  caddy reload failed, restoring previous Caddyfile: {result.output.strip()}")
        restored = False
        try:
            self.executor.write_file(target.caddyfile_path, original)
            restored = self._reload(target).ok
        except RemoteError as e:
            logger.critical(f"  Could not restore Caddyfile: {e}")
        if not restored:
            logger.critical(
                f"  CRITICAL: Caddyfile and live proxy for {target.name} may disagree. "
                f"Check {target.caddyfile_path} on {target.ssh_host}."
            )
        raise ProxyReloadError(
            f"Caddy reload failed while switching {target.name} to port {port}", restored=restored
        )

    # ── Verification ──

    def public_url(self, target: Target) -> str:
        if target.domain:
            return f"https://{target.domain}{target.health_check_path}"
        return f"http://{resolve_host(target.ssh_host).hostname}{target.health_check_path}"

    def verify_traffic(self, target: Target, attempts: int = 3, timeout: float = 5) -> bool:
        """Send a few requests through the public proxy endpoint."""
        url = self.public_url(target)
        successes = 0
        for i in range(attempts):
            try:
                r = requests.get(url, timeout=timeout)
                if r.status_code < 400:
                    successes += 1
                    logger.info(f"  Verification {i + 1}/{attempts}: OK")
                else:
                    logger.info(f"  Verification {i + 1}/{attempts}: HTTP {r.status_code}")
            except requests.RequestException as e:
                logger.info(f"  Verification {i + 1}/{attempts}: error ({type(e).__name__})")
            if i < attempts - 1:
                self.sleep(1)
        return successes == attempts
