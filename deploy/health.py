import logging
import time

logger = logging.getLogger(__name__)


def poll_health(
    containers,
    port: int,
    path: str,
    timeout: int,
    interval: float = 1,
    sleep=time.sleep,
    clock=time.monotonic,
) -> float | None:
    """Probe ``http://localhost:<port><path>`` on the host until it answers.

    Gives up after ``timeout`` attempts or once ``timeout`` seconds have
    passed on ``clock``, whichever comes first, so slow probes cannot stretch
    the wait. Returns the elapsed seconds at the first success, or None.
    """
    start = clock()
    attempt = 0
    while True:
        attempt += 1
        ok = containers.probe_http(port, path)
        spent = clock() - start
        if ok:
            # A probe answering on attempt n counts as n intervals at least
            elapsed = max(attempt * interval, round(spent, 1))
            logger.info(f"  ✓ Health check passed after {elapsed:g}s")
            return elapsed
        logger.info(f"  Waiting for container to be ready... ({attempt}/{timeout})")
        if attempt >= timeout or spent >= timeout:
            break
        sleep(interval)

    logger.info(f"  Health check timed out after {attempt} attempts ({spent:.1f}s)")
    return None
