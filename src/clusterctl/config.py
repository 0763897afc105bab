"""Command configuration and argument parsing."""

import argparse
import re
import ssl
from dataclasses import dataclass

from clusterctl.exceptions import ConfigError

SUBCOMMANDS_USAGE = """
subcommands:
  applyprimarylabels statefulset_name
      sets the primary label on the pod whose server reports role primary and
      labels the other pods standby.
  gracefulfailover statefulset_name
      takes the current primary, makes it a standby, and makes the next
      replica (or the most caught-up standby, with --min-caughtup-standbys)
      the primary.
  promotestandby statefulset_name
      takes the most up-to-date reachable standby and makes it the primary.
  rollingrestart statefulset_name
      restarts every pod, one at a time, waiting for each to become ready;
      fails the primary over before restarting it.

Invocations against the same cluster must be serialized by the operator.
"""

UNCONSTRAINED = -1

_DURATION_RE = re.compile(r"^(\d+(?:\.\d+)?)(ms|s|m|h)?$")
_DURATION_UNITS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0, None: 1.0}


def parse_duration(value: str) -> float:
    """Parse ``"30"``, ``"30s"``, ``"2m"``, ``"500ms"`` or ``"1h"`` into seconds."""
    match = _DURATION_RE.match(value.strip())
    if match is None:
        raise argparse.ArgumentTypeError(f"invalid duration: {value!r}")
    return float(match.group(1)) * _DURATION_UNITS[match.group(2)]


@dataclass
class Config:
    """Settings shared by every command.

    Passed explicitly to each command; nothing here is process-global.
    """

    namespace: str = "default"

    # Number of standbys which must be caught up for a graceful failover to
    # proceed. UNCONSTRAINED requires every standby to be reachable instead.
    min_caught_up_standbys: int = UNCONSTRAINED

    # Deadline for the entire command run, in seconds.
    timeout: float = 30.0
    # How long a single restarted instance may take to become ready.
    wait_for_ready: float = 120.0
    # Retry budget for loading the state of one instance.
    load_state_budget: float = 10.0
    connect_timeout: float = 5.0

    database: str = "dolt_cluster"

    tls_verified: bool = False
    tls_insecure: bool = False
    tls_ca: str | None = None
    tls_server_name: str | None = None

    def validate(self) -> None:
        """Reject conflicting or out-of-range settings."""
        if self.tls_insecure:
            if self.tls_verified:
                raise ConfigError("cannot provide --tls-insecure and --tls")
            if self.tls_server_name:
                raise ConfigError("cannot provide --tls-insecure and --tls-server-name")
            if self.tls_ca:
                raise ConfigError("cannot provide --tls-insecure and --tls-ca")
        if self.min_caught_up_standbys < UNCONSTRAINED:
            raise ConfigError(
                f"invalid min-caughtup-standbys {self.min_caught_up_standbys}; "
                "must be -1 or a non-negative count"
            )
        for field in ("timeout", "wait_for_ready", "load_state_budget", "connect_timeout"):
            if getattr(self, field) <= 0:
                raise ConfigError(f"{field} must be positive")

    @property
    def constrained(self) -> bool:
        return self.min_caught_up_standbys != UNCONSTRAINED

    @property
    def tls_enabled(self) -> bool:
        return (
            self.tls_verified
            or self.tls_insecure
            or self.tls_ca is not None
            or self.tls_server_name is not None
        )

    def ssl_context(self) -> ssl.SSLContext | None:
        """Build the TLS context for instance connections, or None for plaintext."""
        if not self.tls_enabled:
            return None

        if self.tls_insecure:
            ctx = ssl.create_default_context()
            ctx.check_hostname = False
            ctx.verify_mode = ssl.CERT_NONE
            return ctx

        try:
            return ssl.create_default_context(cafile=self.tls_ca)
        except (OSError, ssl.SSLError) as e:
            raise ConfigError(f"failed to load tls-ca {self.tls_ca}: {e}") from e

    def server_hostname(self, hostname: str) -> str | None:
        """Name to verify against the server certificate and send in SNI."""
        if not self.tls_enabled:
            return None
        return self.tls_server_name or hostname


COMMAND_NAMES = ("applyprimarylabels", "gracefulfailover", "promotestandby", "rollingrestart")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="clusterctl",
        description="Operate the primary/standby roles of a replicated database cluster.",
        epilog=SUBCOMMANDS_USAGE,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "-n", dest="namespace", default="default", help="namespace of the stateful set"
    )
    parser.add_argument(
        "--min-caughtup-standbys",
        dest="min_caught_up_standbys",
        type=int,
        default=UNCONSTRAINED,
        help="number of standbys which must be caught up for a graceful failover to succeed",
    )
    parser.add_argument(
        "--tls", dest="tls_verified", action="store_true", help="require verified TLS"
    )
    parser.add_argument(
        "--tls-insecure",
        action="store_true",
        help="use TLS but do not verify the server certificate",
    )
    parser.add_argument(
        "--tls-ca", help="CA bundle used to verify the server certificate; implies --tls"
    )
    parser.add_argument(
        "--tls-server-name",
        help="server name to verify in the certificate and send in SNI; implies --tls",
    )
    parser.add_argument(
        "--timeout",
        type=parse_duration,
        default=30.0,
        help="deadline for the entire command (default: 30s)",
    )
    parser.add_argument(
        "--wait-for-ready",
        type=parse_duration,
        default=120.0,
        help="how long to wait for each restarted pod to become ready (default: 2m)",
    )
    parser.add_argument(
        "--log-level",
        default="info",
        choices=("debug", "info", "warning", "error"),
    )
    parser.add_argument("--log-format", default="console", choices=("console", "json"))
    parser.add_argument("subcommand", choices=COMMAND_NAMES)
    parser.add_argument("statefulset_name")
    return parser


def parse_args(argv: list[str] | None = None) -> tuple[Config, argparse.Namespace]:
    """Parse command line arguments into a validated Config.

    Usage errors, including conflicting TLS flags, exit with status 2.
    """
    parser = build_parser()
    args = parser.parse_args(argv)

    config = Config(
        namespace=args.namespace,
        min_caught_up_standbys=args.min_caught_up_standbys,
        timeout=args.timeout,
        wait_for_ready=args.wait_for_ready,
        tls_verified=args.tls_verified,
        tls_insecure=args.tls_insecure,
        tls_ca=args.tls_ca,
        tls_server_name=args.tls_server_name,
    )
    try:
        config.validate()
    except ConfigError as e:
        parser.error(str(e))

    return config, args
