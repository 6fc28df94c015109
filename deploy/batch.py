"""
Multi-target deployment.

Each target is deployed by its own ``python -m deploy`` child process, so
attempts share no in-process state. Output of every child is written to
``deploy-<target>.log`` and echoed to the console; a ``.deploy-<target>.result``
marker records the outcome until the summary has read it.

Two attempts against the same target at once are not safe; duplicate target
names are dropped, but separate batch invocations are not coordinated.
"""

import logging
import subprocess
import sys
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from pathlib import Path

from shipyard.config import settings

logger = logging.getLogger(__name__)

SUCCESS = "SUCCESS"
FAILED = "FAILED"


@dataclass
class TargetResult:
    target: str
    success: bool
    exit_code: int
    log_file: Path


@dataclass
class BatchSummary:
    results: list[TargetResult]
    duration_seconds: float

    @property
    def success_count(self) -> int:
        return sum(1 for r in self.results if r.success)

    @property
    def failed_count(self) -> int:
        return len(self.results) - self.success_count

    @property
    def exit_code(self) -> int:
        return 1 if self.failed_count else 0


class BatchDriver:
    def __init__(
        self,
        targets: list[str],
        zero_downtime: bool = False,
        tag: str | None = None,
        parallel: bool = False,
        work_dir: str | Path | None = None,
        command_prefix: list[str] | None = None,
        log_level: str | None = None,
        log_file: str | None = None,
        clock=time.monotonic,
    ):
        # dict.fromkeys keeps order and drops duplicates
        self.targets = list(dict.fromkeys(targets))
        self.zero_downtime = zero_downtime
        self.tag = tag
        self.parallel = parallel
        self.work_dir = Path(work_dir or settings.ROOT_DIR).resolve()
        self.command_prefix = command_prefix or [sys.executable, "-m", "deploy"]
        self.child_log_level = log_level
        self.child_log_file = log_file
        self.clock = clock
        self._output_lock = threading.Lock()

    def log_file(self, target: str) -> Path:
        return self.work_dir / f"deploy-{target}.log"

    def marker_file(self, target: str) -> Path:
        return self.work_dir / f".deploy-{target}.result"

    def command(self, target: str) -> list[str]:
        mode = "deploy-zero-downtime" if self.zero_downtime else "deploy"
        argv = list(self.command_prefix)
        # Global options go before the subcommand
        if self.child_log_level:
            argv += ["--log-level", self.child_log_level]
        if self.child_log_file:
            argv += ["--log-file", str(Path(self.child_log_file).resolve())]
        argv += [mode, target]
        if self.tag:
            argv.append(self.tag)
        return argv

    def _echo(self, target: str, line: str) -> None:
        prefix = f"[{target}] " if self.parallel else ""
        with self._output_lock:
            sys.stdout.write(f"{prefix}{line}")
            sys.stdout.flush()

    def deploy_target(self, target: str) -> TargetResult:
        log_file = self.log_file(target)
        logger.info(f"[INFO] Starting deployment to {target}...")

        with open(log_file, "w") as log:
            proc = subprocess.Popen(
                self.command(target),
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                cwd=str(self.work_dir),
            )
            for line in proc.stdout:
                log.write(line)
                self._echo(target, line)
            exit_code = proc.wait()

        success = exit_code == 0
        self.marker_file(target).write_text(SUCCESS if success else FAILED)
        if success:
            logger.info(f"[SUCCESS] Deployment to {target} completed successfully")
        else:
            logger.error(f"[ERROR] Deployment to {target} failed (see {log_file} for details)")
        return TargetResult(target=target, success=success, exit_code=exit_code, log_file=log_file)

    def run(self) -> BatchSummary:
        start = self.clock()

        if self.parallel:
            logger.info("[INFO] Deploying to all targets in parallel...")
            with ThreadPoolExecutor(max_workers=max(len(self.targets), 1)) as pool:
                finished = list(pool.map(self.deploy_target, self.targets))
        else:
            logger.info("[INFO] Deploying to targets sequentially...")
            finished = [self.deploy_target(target) for target in self.targets]

        results = [self._collect(r) for r in finished]
        summary = BatchSummary(results=results, duration_seconds=round(self.clock() - start, 1))
        self.print_summary(summary)
        return summary

    def _collect(self, finished: TargetResult) -> TargetResult:
        """Read and remove the marker; a missing marker counts as a failure."""
        target = finished.target
        marker = self.marker_file(target)
        success = marker.is_file() and marker.read_text().strip() == SUCCESS
        marker.unlink(missing_ok=True)
        return TargetResult(
            target=target,
            success=success,
            exit_code=finished.exit_code,
            log_file=finished.log_file,
        )

    def print_summary(self, summary: BatchSummary) -> None:
        logger.info("=" * 41)
        logger.info("Deployment Summary")
        logger.info("=" * 41)
        logger.info(f"Total time: {summary.duration_seconds:g} seconds")
        for r in summary.results:
            if r.success:
                logger.info(f"  ✓ {r.target}")
            else:
                logger.error(f"  ✗ {r.target} (see {r.log_file.name})")
        logger.info(f"Success: {summary.success_count} | Failed: {summary.failed_count}")
        if summary.failed_count:
            logger.error("[ERROR] Some deployments failed!")
        else:
            logger.info("[SUCCESS] All deployments completed successfully!")
