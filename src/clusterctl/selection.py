"""Policies for choosing the next primary."""

from collections import Counter
from dataclasses import dataclass
from datetime import datetime
from urllib.parse import urlsplit

from clusterctl.exceptions import TransitionError
from clusterctl.state import ClusterSnapshot


def round_robin_successor(current_primary: int, num_replicas: int) -> int:
    return (current_primary + 1) % num_replicas


def pick_next_primary(snapshot: ClusterSnapshot) -> int | None:
    """Pick the reachable standby that is best caught up overall.

    Each standby is scored by the oldest ``last_update`` among its databases,
    and the standby with the most recent such score wins. Standbys without
    any timestamp are only chosen when no standby has one, in which case the
    first standby by index is returned. Returns None when there is no
    reachable standby.
    """
    first_standby: int | None = None
    best: int | None = None
    best_updated: datetime | None = None

    for i, state in enumerate(snapshot):
        if not state.is_standby:
            continue
        if first_standby is None:
            first_standby = i

        updates = [row.last_update for row in state.status if row.last_update is not None]
        if not updates:
            continue
        oldest = min(updates)

        if best_updated is None or oldest > best_updated:
            best = i
            best_updated = oldest

    if best is not None:
        return best
    return first_standby


@dataclass
class TransitionResult:
    """One row returned by the consensus-gated standby transition."""

    caught_up: bool
    database: str
    remote: str
    remote_url: str


def _host_of(url: str) -> tuple[str, str]:
    """Return (netloc, hostname) of a remote URL."""
    parts = urlsplit(url)
    if not parts.netloc:
        raise TransitionError(f"cannot determine host of remote url {url!r}")
    return parts.netloc, parts.hostname or ""


def _match_instance(hostname: str, snapshot: ClusterSnapshot) -> int | None:
    for i, state in enumerate(snapshot):
        instance_hostname = state.instance.hostname
        if instance_hostname == hostname or instance_hostname.startswith(hostname):
            return i
    return None


def select_caught_up_instance(results: list[TransitionResult], snapshot: ClusterSnapshot) -> int:
    """Map the most caught-up remote host back to an instance index.

    Caught-up rows are counted per remote host across all databases. The
    host with the highest count wins; among equal counts the host matching
    the lowest instance index wins.

    Raises:
        TransitionError: if no host was caught up or the winning host
            matches no instance
    """
    counts: Counter[str] = Counter()
    hostnames: dict[str, str] = {}
    for result in results:
        netloc, hostname = _host_of(result.remote_url)
        hostnames.setdefault(netloc, hostname)
        if result.caught_up:
            counts[netloc] += 1

    if not counts:
        raise TransitionError("no standby was reported as caught up")

    def rank(netloc: str) -> tuple[int, int, str]:
        index = _match_instance(hostnames[netloc], snapshot)
        return (-counts[netloc], len(snapshot) if index is None else index, netloc)

    winner = min(counts, key=rank)
    index = _match_instance(hostnames[winner], snapshot)
    if index is None:
        raise TransitionError(f"did not find an instance for the caught up host: {winner}")
    return index
