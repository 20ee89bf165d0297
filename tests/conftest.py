"""Shared pytest fixtures."""

from collections.abc import Iterator

import pytest

from src.relay.metrics import MetricsCollector, get_metrics_collector, reset_metrics_collector
from src.relay.protocol import MessageCodec
from src.relay.roster import Roster


@pytest.fixture(autouse=True)
def fresh_metrics() -> Iterator[MetricsCollector]:
    """Give every test its own global metrics collector."""
    reset_metrics_collector()
    yield get_metrics_collector()
    reset_metrics_collector()


@pytest.fixture
def codec() -> MessageCodec:
    return MessageCodec()


@pytest.fixture
def roster() -> Roster:
    return Roster()
