"""
Zero-Downtime Deployment Orchestrator

Blue-green upgrade of one target behind its Caddy proxy:

    IDLE -> CANDIDATE_STARTING -> HEALTH_CHECKING -> TRAFFIC_SWITCHED
         -> INCUMBENT_RETIRING -> CANONICAL_RECREATING -> TRAFFIC_RESTORED
         -> CANDIDATE_CLEANUP -> DONE

The candidate (``<name>-blue``) comes up on the alternate port, is health
checked, takes the traffic while the incumbent is replaced by a fresh
canonical container on the canonical port, and is then removed.

Failures before the traffic switch are compensated: the candidate is torn
down and the incumbent keeps serving. After the switch there is no automatic
compensation. The failing state is attached to the raised error and the log
says which container is serving.
"""

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum

from deploy import preflight
from deploy.containers import NETWORK_HOST, RESTART_ALWAYS, ContainerManager, RunOptions
from deploy.health import poll_health
from deploy.proxy import ProxyController
from shipyard import metrics
from shipyard.config import settings
from shipyard.errors import (
    CanonicalVerificationError,
    DeploymentError,
    HealthCheckFailed,
    PreconditionError,
    ProxyError,
    ProxyReloadError,
    ShipyardError,
)
from shipyard.images import DEFAULT_TAG, normalize_image
from shipyard.targets import Target

logger = logging.getLogger(__name__)

STRATEGY = "zero-downtime"
TOTAL_STEPS = 10


class DeployState(str, Enum):
    IDLE = "idle"
    CANDIDATE_STARTING = "candidate_starting"
    HEALTH_CHECKING = "health_checking"
    HEALTH_FAILED = "health_failed"
    TRAFFIC_SWITCHED = "traffic_switched"
    INCUMBENT_RETIRING = "incumbent_retiring"
    CANONICAL_RECREATING = "canonical_recreating"
    TRAFFIC_RESTORED = "traffic_restored"
    CANDIDATE_CLEANUP = "candidate_cleanup"
    DONE = "done"


# States whose failures are undone by removing the candidate.
COMPENSATED_STATES = frozenset({DeployState.CANDIDATE_STARTING, DeployState.HEALTH_CHECKING})

# What is serving traffic when a failure leaves remote state as-is.
SERVING_AFTER_FAILURE = {
    DeployState.TRAFFIC_SWITCHED: "proxy routing unknown; incumbent and candidate are both running",
    DeployState.INCUMBENT_RETIRING: "candidate serves on the alternate port; incumbent may be stopped",
    DeployState.CANONICAL_RECREATING: "candidate serves on the alternate port; no canonical container",
    DeployState.TRAFFIC_RESTORED: "candidate and canonical are both running; proxy may still route to the alternate port",
    DeployState.CANDIDATE_CLEANUP: "proxy routes to the canonical port; canonical container is not running",
}


class Outcome(str, Enum):
    SUCCESS = "success"
    HEALTH_CHECK_FAILED = "health_check_failed"
    ERROR = "error"


@dataclass
class DeploymentAttempt:
    target: str
    image: str
    tag: str
    strategy: str = STRATEGY
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    states: list[DeployState] = field(default_factory=lambda: [DeployState.IDLE])
    outcome: Outcome | None = None
    error: str | None = None
    health_check_seconds: float | None = None
    duration_seconds: float | None = None

    @property
    def state(self) -> DeployState:
        return self.states[-1]

    def to_dict(self) -> dict:
        return {
            "target": self.target,
            "image": self.image,
            "tag": self.tag,
            "strategy": self.strategy,
            "started_at": self.started_at.isoformat(),
            "states": [s.value for s in self.states],
            "outcome": self.outcome.value if self.outcome else None,
            "error": self.error,
            "health_check_seconds": self.health_check_seconds,
            "duration_seconds": self.duration_seconds,
        }


def candidate_options(target: Target, image: str, mounts) -> RunOptions:
    """Transitional instance on the alternate port; no restart policy."""
    return RunOptions(
        name=target.candidate_name,
        image=image,
        network=NETWORK_HOST,
        env_file=target.remote_env_file,
        env={"PORT": str(target.alt_port)},
        volumes=mounts,
    )


def canonical_options(target: Target, image: str, mounts) -> RunOptions:
    """Long-lived instance on the canonical port, revived by the runtime."""
    return RunOptions(
        name=target.container_name,
        image=image,
        network=NETWORK_HOST,
        env_file=target.remote_env_file,
        env={"PORT": str(target.app_port)},
        volumes=mounts,
        restart_policy=RESTART_ALWAYS,
    )


class BlueGreenOrchestrator:
    def __init__(
        self,
        target: Target,
        executor,
        containers: ContainerManager | None = None,
        proxy: ProxyController | None = None,
        settle_seconds: float | None = None,
        poll_interval: float | None = None,
        verify_public: bool | None = None,
        metrics_textfile: str | None = None,
        sleep=time.sleep,
        clock=time.monotonic,
    ):
        self.target = target
        self.executor = executor
        self.containers = containers or ContainerManager(executor)
        self.proxy = proxy or ProxyController(executor, self.containers, sleep=sleep)
        self.settle_seconds = settings.SETTLE_SECONDS if settle_seconds is None else settle_seconds
        self.poll_interval = settings.HEALTH_POLL_INTERVAL if poll_interval is None else poll_interval
        self.verify_public = settings.VERIFY_PUBLIC_ENDPOINT if verify_public is None else verify_public
        self.metrics_textfile = metrics_textfile or settings.METRICS_TEXTFILE
        self.sleep = sleep
        self.clock = clock

        self.attempt: DeploymentAttempt | None = None

    def log(self, msg: str, level: str = "INFO"):
        extra = {"target": self.target.name}
        if self.attempt is not None:
            extra["state"] = self.attempt.state.value
        getattr(logger, level.lower(), logger.info)(msg, extra=extra)

    def _enter(self, state: DeployState) -> None:
        self.attempt.states.append(state)
        logger.debug(f"  state -> {state.value}", extra={"target": self.target.name, "state": state.value})

    # ── Health Checking ───────────────────────────────────────────

    def wait_for_health(self) -> float:
        """Poll the candidate once per interval until it answers or the timeout runs out.

        Returns the elapsed seconds at the first successful probe.
        """
        port = self.target.alt_port
        path = self.target.health_check_path
        timeout = self.target.health_check_timeout

        elapsed = poll_health(
            self.containers, port, path, timeout, self.poll_interval, self.sleep, self.clock
        )
        if elapsed is not None:
            return elapsed

        raise HealthCheckFailed(
            f"Health check failed after {timeout}s "
            f"(http://localhost:{port}{path} on {self.target.ssh_host})"
        )

    # ── Main Deploy Sequence ──────────────────────────────────────

    def deploy(self, tag: str | None = None) -> DeploymentAttempt:
        target = self.target
        tag = tag or DEFAULT_TAG
        image = normalize_image(target.image, tag)
        self.attempt = DeploymentAttempt(target=target.name, image=image, tag=tag)
        start = self.clock()

        self.log("=" * 60)
        self.log(f"DEPLOYMENT START (zero-downtime): {target.name}")
        self.log(f"  SSH Host:      {target.ssh_host}")
        self.log(f"  Container:     {target.container_name}")
        self.log(f"  Image:         {image}")
        self.log(f"  Registry Auth: {preflight.registry_summary(target)}")
        self.log(f"  Domain:        {target.domain or '<not configured>'}")
        self.log(f"  Ports:         canonical={target.app_port} alternate={target.alt_port}")
        self.log("=" * 60)

        try:
            self._run(image)
        except ShipyardError as e:
            self.attempt.duration_seconds = round(self.clock() - start, 1)
            self._abort(e)
            self._finish()
            raise

        self.attempt.outcome = Outcome.SUCCESS
        self.attempt.duration_seconds = round(self.clock() - start, 1)
        self._finish()

        self.log("=" * 60)
        self.log(f"DEPLOYMENT COMPLETE (zero-downtime): {target.container_name} "
                 f"running {image} ({self.attempt.duration_seconds}s)")
        self.log("=" * 60)
        self._print_useful_commands()
        return self.attempt

    def _run(self, image: str) -> None:
        target = self.target

        # ── IDLE: preconditions, nothing mutated yet ──
        self.log(f"[1/{TOTAL_STEPS}] Checking SSH connection...")
        preflight.verify_connection(self.executor, target)
        preflight.verify_runtime(self.containers, target)

        self.log(f"[2/{TOTAL_STEPS}] Verifying Caddy container...")
        if not self.proxy.is_running(target):
            raise PreconditionError(
                f"Caddy container '{target.proxy_name}' not found. "
                f"Please run: setup-proxy {target.name}"
            )
        self.log("  ✓ Caddy container is running")

        self.log(f"[3/{TOTAL_STEPS}] Uploading target files...")
        preflight.upload_target_files(self.executor, target)

        self.log(f"[4/{TOTAL_STEPS}] Logging into container registry...")
        preflight.registry_login(self.containers, target)

        self.log(f"[5/{TOTAL_STEPS}] Pulling image: {image}...")
        preflight.pull_image(self.containers, image)

        self.log(f"[6/{TOTAL_STEPS}] Processing file mappings...")
        mounts = preflight.file_mounts(target)

        # ── CANDIDATE_STARTING ──
        self._enter(DeployState.CANDIDATE_STARTING)
        self.log(f"[7/{TOTAL_STEPS}] Starting new container ({target.candidate_name}) "
                 f"on port {target.alt_port}...")
        if self.containers.exists(target.candidate_name):
            self.log(f"  Stale {target.candidate_name} found, removing it first")
        self.containers.stop_and_remove(target.candidate_name)
        self.containers.run(candidate_options(self.target, image, mounts))
        self.log("  ✓ Candidate container started")

        # ── HEALTH_CHECKING ──
        self._enter(DeployState.HEALTH_CHECKING)
        self.log(f"[8/{TOTAL_STEPS}] Running health check (timeout: {target.health_check_timeout}s)...")
        elapsed = self.wait_for_health()
        self.attempt.health_check_seconds = elapsed
        metrics.record_health_check(target.name, elapsed)

        # ── POINT OF NO RETURN ──
        # Before this: rollback = remove the candidate
        # After this: no automatic compensation

        # ── TRAFFIC_SWITCHED ──
        self._enter(DeployState.TRAFFIC_SWITCHED)
        self.log(f"[9/{TOTAL_STEPS}] Switching traffic to new container...")
        self.proxy.point_to(target, target.alt_port)
        self.log(f"  ✓ Traffic switched to {target.candidate_name} (port {target.alt_port})")
        self.sleep(self.settle_seconds)

        # ── INCUMBENT_RETIRING ──
        self._enter(DeployState.INCUMBENT_RETIRING)
        self.containers.stop_and_remove(target.container_name)
        self.log("  ✓ Old container removed")

        # ── CANONICAL_RECREATING ──
        self._enter(DeployState.CANONICAL_RECREATING)
        self.containers.run(canonical_options(self.target, image, mounts))
        self.log(f"  ✓ New container started on port {target.app_port}")

        # ── TRAFFIC_RESTORED ──
        self._enter(DeployState.TRAFFIC_RESTORED)
        self.proxy.point_to(target, target.app_port)
        self.log(f"  ✓ Traffic switched to {target.container_name} (port {target.app_port})")

        # ── CANDIDATE_CLEANUP ──
        self._enter(DeployState.CANDIDATE_CLEANUP)
        self.containers.stop_and_remove(target.candidate_name)
        self.log(f"  ✓ {target.candidate_name} removed")

        self.log(f"[10/{TOTAL_STEPS}] Verifying deployment...")
        self.sleep(self.settle_seconds)
        status = self.containers.status(target.container_name)
        if not status:
            self.containers.log_tail(target.container_name, tail=50)
            raise CanonicalVerificationError(
                f"Container '{target.container_name}' is not running after the switch. "
                f"The previous version has already been removed; manual intervention is "
                f"required (e.g. recover {target.name} {self.attempt.tag})"
            )
        self.log(f"  ✓ Container is running: {status}")

        if self.verify_public and not self.proxy.verify_traffic(target):
            self.log(f"  Public endpoint check failed for {self.proxy.public_url(target)}", level="WARNING")

        self._enter(DeployState.DONE)

    # ── Failure Handling ──────────────────────────────────────────

    @staticmethod
    def _compensable(state: DeployState, error: Exception) -> bool:
        if state in COMPENSATED_STATES:
            return True
        if state == DeployState.TRAFFIC_SWITCHED:
            # The routing fact was never changed, or was changed and put back
            if isinstance(error, ProxyReloadError):
                return error.restored
            return isinstance(error, ProxyError)
        return False

    def _abort(self, error: ShipyardError) -> None:
        target = self.target
        state = self.attempt.state
        if isinstance(error, DeploymentError) and error.state is None:
            error.state = state
        self.attempt.error = str(error)

        if isinstance(error, HealthCheckFailed):
            self.attempt.outcome = Outcome.HEALTH_CHECK_FAILED
            self._enter(DeployState.HEALTH_FAILED)
            self.log(f"  ✗ {error}", level="ERROR")
            self.containers.log_tail(target.candidate_name, tail=50)
        else:
            self.attempt.outcome = Outcome.ERROR
            self.log(f"DEPLOYMENT FAILED in state {state.value}: {error}", level="ERROR")

        if state == DeployState.IDLE:
            self.log("  Nothing was changed on the host", level="ERROR")
        elif self._compensable(state, error):
            self.log(f"Rolling back: removing {target.candidate_name}...")
            try:
                self.containers.stop_and_remove(target.candidate_name)
            except ShipyardError as cleanup_err:
                self.log(f"  Warning: could not remove {target.candidate_name}: {cleanup_err}",
                         level="WARNING")
            self.log(f"  ✗ Deployment failed ({target.container_name} still serving)", level="ERROR")
        else:
            self.log(
                f"CRITICAL: no automatic rollback from {state.value}: "
                f"{SERVING_AFTER_FAILURE.get(state, 'remote state unknown')}",
                level="CRITICAL",
            )
            self.log(
                f"  Recover with: recover {target.name} {self.attempt.tag}",
                level="CRITICAL",
            )

    def _finish(self) -> None:
        metrics.record_attempt(
            self.target.name, STRATEGY, self.attempt.outcome.value, self.attempt.duration_seconds or 0
        )
        metrics.write_metrics(self.metrics_textfile)
        logger.debug(
            "attempt finished",
            extra={
                "target": self.target.name,
                "outcome": self.attempt.outcome.value,
                "duration_seconds": self.attempt.duration_seconds,
                "image": self.attempt.image,
            },
        )

    def _print_useful_commands(self) -> None:
        t = self.target
        runtime = self.containers.runtime
        self.log("Useful commands:")
        self.log(f"  App logs:    ssh {t.ssh_host} '{runtime} logs -f {t.container_name}'")
        self.log(f"  Caddy logs:  ssh {t.ssh_host} '{runtime} logs -f {t.proxy_name}'")
        self.log(f"  Restart app: ssh {t.ssh_host} '{runtime} restart {t.container_name}'")
        self.log(f"  Rollback:    deploy-zero-downtime {t.name} <previous-tag>")
