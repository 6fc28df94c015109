"""
Direct deployment: stop, remove and recreate the target container in place.

There is a short outage while the container is recreated; use the
zero-downtime flow for targets fronted by the proxy.
"""

import logging
import time

from deploy import preflight
from deploy.containers import RESTART_ALWAYS, ContainerManager, RunOptions
from deploy.orchestrator import DeploymentAttempt, Outcome
from shipyard import metrics
from shipyard.config import settings
from shipyard.errors import ContainerError, ShipyardError
from shipyard.images import DEFAULT_TAG, normalize_image
from shipyard.targets import Target

logger = logging.getLogger(__name__)

STRATEGY = "direct"
TOTAL_STEPS = 9


class DirectDeployer:
    def __init__(
        self,
        target: Target,
        executor,
        containers: ContainerManager | None = None,
        settle_seconds: float | None = None,
        metrics_textfile: str | None = None,
        sleep=time.sleep,
        clock=time.monotonic,
    ):
        self.target = target
        self.executor = executor
        self.containers = containers or ContainerManager(executor)
        self.settle_seconds = settings.DIRECT_SETTLE_SECONDS if settle_seconds is None else settle_seconds
        self.metrics_textfile = metrics_textfile or settings.METRICS_TEXTFILE
        self.sleep = sleep
        self.clock = clock

    def run_options(self, image: str, mounts) -> RunOptions:
        return RunOptions(
            name=self.target.container_name,
            image=image,
            ports=list(self.target.port_mappings),
            env_file=self.target.remote_env_file,
            volumes=mounts,
            restart_policy=RESTART_ALWAYS,
        )

    def deploy(self, tag: str | None = None) -> DeploymentAttempt:
        target = self.target
        tag = tag or DEFAULT_TAG
        image = normalize_image(target.image, tag)
        attempt = DeploymentAttempt(target=target.name, image=image, tag=tag, strategy=STRATEGY)
        start = self.clock()

        logger.info("=" * 60)
        logger.info(f"DEPLOYMENT START (direct): {target.name}")
        logger.info(f"  SSH Host:      {target.ssh_host}")
        logger.info(f"  Container:     {target.container_name}")
        logger.info(f"  Image:         {image}")
        logger.info(f"  Registry Auth: {preflight.registry_summary(target)}")
        logger.info(f"  Local Dir:     {target.local_dir}")
        logger.info(f"  Remote Dir:    {target.remote_dir}")
        logger.info("=" * 60)

        try:
            status = self._run(image)
        except ShipyardError as e:
            attempt.outcome = Outcome.ERROR
            attempt.error = str(e)
            attempt.duration_seconds = round(self.clock() - start, 1)
            logger.error(f"DEPLOYMENT FAILED: {e}")
            metrics.record_attempt(target.name, STRATEGY, attempt.outcome.value, attempt.duration_seconds)
            metrics.write_metrics(self.metrics_textfile)
            raise

        attempt.outcome = Outcome.SUCCESS
        attempt.duration_seconds = round(self.clock() - start, 1)
        metrics.record_attempt(target.name, STRATEGY, attempt.outcome.value, attempt.duration_seconds)
        metrics.write_metrics(self.metrics_textfile)

        logger.info("=" * 60)
        logger.info(f"DEPLOYMENT COMPLETE (direct): {target.container_name} {status} "
                    f"({attempt.duration_seconds}s)")
        logger.info("=" * 60)
        self._print_useful_commands()
        return attempt

    def _run(self, image: str) -> str:
        target = self.target

        logger.info(f"[1/{TOTAL_STEPS}] Checking SSH connection...")
        preflight.verify_connection(self.executor, target)

        logger.info(f"[2/{TOTAL_STEPS}] Checking {self.containers.runtime} installation...")
        preflight.verify_runtime(self.containers, target)

        logger.info(f"[3/{TOTAL_STEPS}] Uploading container files...")
        preflight.upload_target_files(self.executor, target)

        logger.info(f"[4/{TOTAL_STEPS}] Logging into container registry...")
        preflight.registry_login(self.containers, target)

        logger.info(f"[5/{TOTAL_STEPS}] Pulling image: {image}...")
        preflight.pull_image(self.containers, image)

        logger.info(f"[6/{TOTAL_STEPS}] Processing port mappings...")
        for port in target.port_mappings:
            logger.info(f"  → Port: {port}")
        if not target.port_mappings:
            logger.info("  No port mappings specified (container will not expose ports)")

        logger.info(f"[7/{TOTAL_STEPS}] Processing file mappings...")
        mounts = preflight.file_mounts(target)

        logger.info(f"[8/{TOTAL_STEPS}] Checking for existing container...")
        if self.containers.exists(target.container_name):
            logger.info(f"  Container '{target.container_name}' exists. Updating...")
            self.containers.stop_and_remove(target.container_name)
        else:
            logger.info(f"  Container '{target.container_name}' not found. Creating new deployment...")
        self.containers.run(self.run_options(image, mounts))
        logger.info("  ✓ Container started")

        logger.info(f"[9/{TOTAL_STEPS}] Verifying deployment...")
        self.sleep(self.settle_seconds)
        status = self.containers.status(target.container_name)
        if not status:
            self.containers.log_tail(target.container_name, tail=30)
            raise ContainerError(f"Container '{target.container_name}' is not running")
        logger.info(f"  ✓ Container is running: {status}")

        self.containers.log_tail(target.container_name, tail=20, level=logging.INFO)
        return status

    def _print_useful_commands(self) -> None:
        t = self.target
        runtime = self.containers.runtime
        logger.info("Useful commands:")
        logger.info(f"  View logs:       ssh {t.ssh_host} '{runtime} logs -f {t.container_name}'")
        logger.info(f"  Stop container:  ssh {t.ssh_host} '{runtime} stop {t.container_name}'")
        logger.info(f"  Start container: ssh {t.ssh_host} '{runtime} start {t.container_name}'")
        logger.info(f"  Restart:         ssh {t.ssh_host} '{runtime} restart {t.container_name}'")
        logger.info(f"  Remove:          ssh {t.ssh_host} '{runtime} rm -f {t.container_name}'")
