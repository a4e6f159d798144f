"""Confluent Cloud API mock for integration testing.

This package provides test doubles for the remote side of reconciliation
so that no test needs network access or real credentials.

Key Features:
- Scenario-driven HTTP transport with state transitions (Started, then
  provisioning, created, updated), plugged into httpx as a MockTransport
- In-memory CRUD client with scripted remote statuses and error injection
- Virtual clock whose sleep advances time instantly

Usage:
    from cloud_mock import ScenarioTransport, FakeClientFactory, VirtualClock

    transport = ScenarioTransport()
    transport.stub("POST", "/networking/v1/access-points", 201, body,
                   when="Started", then="provisioning")

    async with build_http_client(context, transport=transport) as http:
        clients = ClientFactory(context, http)
        ...

    assert transport.unmatched == []
"""

from .clock import VirtualClock
from .fake_client import FakeClientFactory, FakeRemoteClient
from .scenario import STARTED, ScenarioTransport, Stub

__all__ = [
    "STARTED",
    "FakeClientFactory",
    "FakeRemoteClient",
    "ScenarioTransport",
    "Stub",
    "VirtualClock",
]
