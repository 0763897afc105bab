"""Integration test fixtures for clusterctl.

These tests require a running primary/standby cluster whose instances answer
the cluster control queries. Point them at it with:
    CLUSTERCTL_TEST_INSTANCES=host1:3306,host2:3306 pytest -m integration
The first instance must currently be the primary.
"""

import os

import pytest

from clusterctl.config import Config
from clusterctl.instance import MemoryCluster, Role

CLUSTERCTL_TEST_INSTANCES = os.environ.get(
    "CLUSTERCTL_TEST_INSTANCES", "localhost:3306,localhost:3307"
)


@pytest.fixture
def instance_addresses() -> list[str]:
    """Get all test instance addresses."""
    return [address.strip() for address in CLUSTERCTL_TEST_INSTANCES.split(",")]


@pytest.fixture
def live_config() -> Config:
    return Config(timeout=60.0, load_state_budget=5.0)


@pytest.fixture
def live_cluster(instance_addresses: list[str]) -> MemoryCluster:
    """An unlabeled cluster over the test instances."""
    return MemoryCluster(
        "integration", instance_addresses, roles=[Role.UNKNOWN] * len(instance_addresses)
    )
