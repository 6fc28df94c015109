"""
Command line entry point.

Usage:
    shipyard deploy <target> [tag]
    shipyard setup-proxy <target>
    shipyard deploy-zero-downtime <target> [tag]
    shipyard deploy-batch [--all | target...] [-p | -s] [--zero-downtime] [--tag TAG] [-y]
    shipyard status <target>
    shipyard recover <target> [tag]
    shipyard list-targets

``python -m deploy`` is equivalent to ``shipyard``.
"""

import argparse
import logging
import sys

from deploy.batch import BatchDriver
from deploy.containers import ContainerManager
from deploy.direct import DirectDeployer
from deploy.orchestrator import BlueGreenOrchestrator
from deploy.proxy import ProxyController
from deploy.rollback import Recovery
from shipyard.config import settings
from shipyard.errors import ConfigError, RemoteError, ShipyardError
from shipyard.logging_config import setup_logging
from shipyard.remote import RemoteExecutor
from shipyard.targets import TargetLoader

logger = logging.getLogger(__name__)


class ArgumentParser(argparse.ArgumentParser):
    """Usage errors exit 1 like every other validation failure."""

    def error(self, message):
        self.print_usage(sys.stderr)
        self.exit(1, f"{self.prog}: error: {message}\n")


def build_parser() -> argparse.ArgumentParser:
    parser = ArgumentParser(
        prog="shipyard",
        description="Deploy container images to remote hosts over SSH",
    )
    parser.add_argument(
        "--root",
        default=None,
        help="Directory holding targets/ and the config files (default: current directory)",
    )
    parser.add_argument("--log-level", default=None, help="Console log level (default: INFO)")
    parser.add_argument("--log-file", default=None, help="Also write JSON logs to this file")

    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("deploy", help="Stop, remove and recreate the target container")
    p.add_argument("target")
    p.add_argument("tag", nargs="?", default=None, help="Image tag (default: latest)")

    p = sub.add_parser("setup-proxy", help="(Re)create the Caddy proxy for a target")
    p.add_argument("target")

    p = sub.add_parser("deploy-zero-downtime", help="Blue-green deployment behind the proxy")
    p.add_argument("target")
    p.add_argument("tag", nargs="?", default=None, help="Image tag (default: latest)")

    p = sub.add_parser("deploy-batch", help="Deploy to several targets")
    p.add_argument("targets", nargs="*")
    p.add_argument("--all", action="store_true", help="Deploy to every directory under targets/")
    mode = p.add_mutually_exclusive_group()
    mode.add_argument("-p", "--parallel", action="store_true", help="Deploy in parallel")
    mode.add_argument("-s", "--sequential", action="store_true", help="Deploy sequentially (default)")
    p.add_argument("--zero-downtime", action="store_true", help="Use the blue-green flow")
    p.add_argument("--tag", default=None, help="Image tag for every target")
    p.add_argument("-y", "--yes", action="store_true", help="Skip the confirmation prompt")

    p = sub.add_parser("status", help="Show container and proxy state for a target")
    p.add_argument("target")

    p = sub.add_parser("recover", help="Restore the canonical container after a failed switch")
    p.add_argument("target")
    p.add_argument("tag", nargs="?", default=None, help="Image tag (default: latest)")

    sub.add_parser("list-targets", help="List configured targets")
    return parser


# ── Commands ──────────────────────────────────────────────────────

def cmd_deploy(args, loader: TargetLoader) -> int:
    target = loader.load(args.target)
    with RemoteExecutor(target.ssh_host) as executor:
        DirectDeployer(target, executor).deploy(args.tag)
    return 0


def cmd_setup_proxy(args, loader: TargetLoader) -> int:
    target = loader.load(args.target)
    logger.info("=" * 50)
    logger.info(f"  Caddy setup: {target.name} ({target.ssh_host})")
    logger.info("=" * 50)
    with RemoteExecutor(target.ssh_host) as executor:
        ProxyController(executor).ensure_running(target)
    logger.info(f"Caddy is proxying {target.domain or ':80'} -> localhost:{target.app_port}")
    logger.info(f"Next: deploy-zero-downtime {target.name} [tag]")
    return 0


def cmd_deploy_zero_downtime(args, loader: TargetLoader) -> int:
    target = loader.load(args.target)
    with RemoteExecutor(target.ssh_host) as executor:
        BlueGreenOrchestrator(target, executor).deploy(args.tag)
    return 0


def cmd_deploy_batch(args, loader: TargetLoader) -> int:
    if args.all:
        targets = loader.directory_targets()
    else:
        targets = args.targets
    if not targets:
        raise ConfigError("No targets given. Pass target names or --all.")

    known = set(loader.available_targets())
    unknown = [t for t in targets if t not in known]
    if unknown:
        raise ConfigError(f"Unknown target(s): {', '.join(unknown)}")

    print("=" * 41)
    print("Multi-Target Deployment")
    print("=" * 41)
    print(f"Mode: {'Parallel' if args.parallel else 'Sequential'}"
          f"{' (zero-downtime)' if args.zero_downtime else ''}")
    if args.all:
        print("Deploying to ALL targets:")
        for t in targets:
            print(f"  - {t}")
    print(f"Targets to deploy: {' '.join(targets)}")
    print()

    if not args.yes:
        reply = input("Continue with deployment? (y/N) ")
        if reply.strip().lower() not in ("y", "yes"):
            logger.warning("Deployment cancelled")
            return 0

    driver = BatchDriver(
        targets,
        zero_downtime=args.zero_downtime,
        tag=args.tag,
        parallel=args.parallel,
        work_dir=loader.root_dir,
        log_level=args.log_level,
        log_file=args.log_file,
    )
    return driver.run().exit_code


def cmd_status(args, loader: TargetLoader) -> int:
    target = loader.load(args.target)
    with RemoteExecutor(target.ssh_host) as executor:
        containers = ContainerManager(executor)
        proxy = ProxyController(executor, containers)
        executor.check_connection()

        print(f"\n{'=' * 50}")
        print(f"  Target: {target.name} ({target.ssh_host})")
        print(f"{'=' * 50}")
        for name in (target.container_name, target.candidate_name, target.proxy_name):
            print(f"  {name:<30} {containers.status(name) or 'not running'}")

        try:
            port = proxy.current_port(target)
        except RemoteError:
            port = None
        if port is None:
            print("  Proxy backend:  unknown (no Caddyfile)")
        else:
            role = "canonical" if port == target.app_port else "alternate" if port == target.alt_port else "other"
            print(f"  Proxy backend:  localhost:{port} ({role})")
        print()
    return 0


def cmd_recover(args, loader: TargetLoader) -> int:
    target = loader.load(args.target)
    with RemoteExecutor(target.ssh_host) as executor:
        Recovery(target, executor).recover(args.tag)
    return 0


def cmd_list_targets(args, loader: TargetLoader) -> int:
    targets = loader.available_targets()
    if not targets:
        print(f"No targets configured in {loader.root_dir}")
        return 0
    print("Available targets:")
    for t in targets:
        print(f"  - {t}")
    return 0


COMMANDS = {
    "deploy": cmd_deploy,
    "setup-proxy": cmd_setup_proxy,
    "deploy-zero-downtime": cmd_deploy_zero_downtime,
    "deploy-batch": cmd_deploy_batch,
    "status": cmd_status,
    "recover": cmd_recover,
    "list-targets": cmd_list_targets,
}


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging(level=args.log_level, log_file=args.log_file)
    loader = TargetLoader(root_dir=args.root or settings.ROOT_DIR)

    try:
        return COMMANDS[args.command](args, loader)
    except ShipyardError as e:
        print(f"\nDeployment error: {e}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        print("\nAborted by user.", file=sys.stderr)
        return 130
