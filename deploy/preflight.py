"""Steps shared by the direct and zero-downtime flows before anything is mutated."""

import logging

from deploy.containers import ContainerManager, Mount
from shipyard.errors import PreconditionError
from shipyard.targets import Target

logger = logging.getLogger(__name__)


def verify_connection(executor, target: Target) -> None:
    executor.check_connection()
    logger.info(f"  ✓ SSH connection to {target.ssh_host} verified")


def verify_runtime(containers: ContainerManager, target: Target) -> None:
    if not containers.runtime_available():
        raise PreconditionError(
            f"{containers.runtime} is not installed on {target.ssh_host}. "
            f"Install it on the host first."
        )
    logger.info(f"  ✓ {containers.runtime} available")


def upload_target_files(executor, target: Target) -> None:
    count = executor.upload_dir(target.local_dir, target.remote_dir)
    logger.info(f"  ✓ {count} target file(s) uploaded to {target.remote_dir}")


def registry_login(containers: ContainerManager, target: Target) -> bool:
    creds = target.credentials
    if creds is None:
        logger.info("  Skipping registry login (no credentials, public image)")
        return False
    username, token = creds
    containers.login(target.login_registry, username, token)
    logger.info(f"  ✓ Logged into {target.login_registry} as {username}")
    return True


def pull_image(containers: ContainerManager, image: str) -> None:
    containers.pull(image)
    logger.info(f"  ✓ Image pulled: {image}")


def file_mounts(target: Target) -> list[Mount]:
    mounts = []
    for remote_file, container_path in target.remote_mounts():
        logger.info(f"  → Mapping: {remote_file} -> {container_path}")
        mounts.append(Mount(remote_file, container_path))
    if not mounts:
        logger.info("  No file mappings specified")
    return mounts


def registry_summary(target: Target) -> str:
    if target.credentials:
        return f"Yes ({target.registry_username})"
    return "No (public image)"
