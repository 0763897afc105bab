"""Command line entry point."""

import asyncio

import structlog

from clusterctl.commands import COMMANDS, run_command
from clusterctl.config import Config, parse_args
from clusterctl.exceptions import ClusterCtlError
from clusterctl.k8s import KubernetesCluster, load_kube_config
from clusterctl.log import configure_logging

logger = structlog.get_logger(__name__)


async def _run(config: Config, command_name: str, statefulset_name: str) -> None:
    command = COMMANDS[command_name]()
    await run_command(command, config, KubernetesCluster.load(config.namespace, statefulset_name))


def main(argv: list[str] | None = None) -> int:
    config, args = parse_args(argv)
    configure_logging(args.log_level, args.log_format)

    logger.info(
        "starting",
        command=args.subcommand,
        statefulset=f"{config.namespace}/{args.statefulset_name}",
    )

    try:
        load_kube_config()
        asyncio.run(_run(config, args.subcommand, args.statefulset_name))
    except TimeoutError:
        logger.error("command timed out", timeout=config.timeout)
        return 1
    except ClusterCtlError as e:
        logger.error("command failed", error=str(e))
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
