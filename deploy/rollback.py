"""
Manual Recovery

Brings a target back to its idle shape after a zero-downtime deployment
failed past the traffic switch: a running canonical container on the
canonical port, the proxy routing to it, and no candidate left over.

Nothing here runs automatically; the orchestrator only points the operator
at it. Use it when the canonical container did not come up, or when the
proxy was left routing to the alternate port.

Usage:
    shipyard recover <target> [tag]
"""

import logging
import time

from deploy import preflight
from deploy.containers import ContainerManager
from deploy.health import poll_health
from deploy.orchestrator import canonical_options
from deploy.proxy import ProxyController
from shipyard.config import settings
from shipyard.errors import CanonicalVerificationError, HealthCheckFailed, PreconditionError
from shipyard.images import DEFAULT_TAG, normalize_image
from shipyard.targets import Target

logger = logging.getLogger(__name__)

TOTAL_STEPS = 6


class Recovery:
    def __init__(
        self,
        target: Target,
        executor,
        containers: ContainerManager | None = None,
        proxy: ProxyController | None = None,
        settle_seconds: float | None = None,
        poll_interval: float | None = None,
        sleep=time.sleep,
        clock=time.monotonic,
    ):
        self.target = target
        self.executor = executor
        self.containers = containers or ContainerManager(executor)
        self.proxy = proxy or ProxyController(executor, self.containers, sleep=sleep)
        self.settle_seconds = settings.SETTLE_SECONDS if settle_seconds is None else settle_seconds
        self.poll_interval = settings.HEALTH_POLL_INTERVAL if poll_interval is None else poll_interval
        self.sleep = sleep
        self.clock = clock

    def _canonical_healthy(self) -> bool:
        t = self.target
        if not self.containers.status(t.container_name):
            return False
        return self.containers.probe_http(t.app_port, t.health_check_path)

    def recover(self, tag: str | None = None) -> str:
        """Returns the canonical container's status string."""
        t = self.target
        image = normalize_image(t.image, tag or DEFAULT_TAG)

        logger.info("=" * 50)
        logger.info(f"  RECOVERY: {t.name} -> {t.container_name}:{t.app_port}")
        logger.info("=" * 50)

        logger.info(f"[1/{TOTAL_STEPS}] Checking SSH connection...")
        preflight.verify_connection(self.executor, t)
        if not self.proxy.is_running(t):
            raise PreconditionError(
                f"Caddy container '{t.proxy_name}' not found. Please run: setup-proxy {t.name}"
            )

        logger.info(f"[2/{TOTAL_STEPS}] Checking if {t.container_name} is running...")
        if self._canonical_healthy():
            logger.info(f"  {t.container_name} is already running and healthy")
        else:
            logger.info(f"  {t.container_name} is not healthy. Recreating it from {image}...")
            preflight.registry_login(self.containers, t)
            preflight.pull_image(self.containers, image)
            self.containers.stop_and_remove(t.container_name)
            self.containers.run(canonical_options(t, image, preflight.file_mounts(t)))

            logger.info(f"[3/{TOTAL_STEPS}] Waiting for {t.container_name} to become healthy "
                        f"({t.health_check_timeout}s timeout)...")
            elapsed = poll_health(
                self.containers, t.app_port, t.health_check_path,
                t.health_check_timeout, self.poll_interval, self.sleep, self.clock,
            )
            if elapsed is None:
                self.containers.log_tail(t.container_name, tail=50)
                raise HealthCheckFailed(
                    f"{t.container_name} did not become healthy within {t.health_check_timeout}s. "
                    f"Manual fix: ssh {t.ssh_host} '{self.containers.runtime} logs {t.container_name}'"
                )

        logger.info(f"[4/{TOTAL_STEPS}] Pointing Caddy at port {t.app_port}...")
        if self.proxy.current_port(t) != t.app_port:
            self.proxy.point_to(t, t.app_port)
            logger.info(f"  ✓ Traffic switched to port {t.app_port}")
        else:
            logger.info(f"  Caddy already routes to port {t.app_port}")

        logger.info(f"[5/{TOTAL_STEPS}] Removing leftover {t.candidate_name}...")
        self.containers.stop_and_remove(t.candidate_name)

        logger.info(f"[6/{TOTAL_STEPS}] Verifying...")
        self.sleep(self.settle_seconds)
        status = self.containers.status(t.container_name)
        if not status:
            self.containers.log_tail(t.container_name, tail=50)
            raise CanonicalVerificationError(f"{t.container_name} is not running after recovery")

        logger.info("=" * 50)
        logger.info(f"  RECOVERY COMPLETE: {t.container_name} is running ({status})")
        logger.info("=" * 50)
        return status
