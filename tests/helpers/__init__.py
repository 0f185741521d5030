"""Test helpers for RouterOS upgrade tests."""

from .mock_session import NEIGHBOR_OUTPUT, MockFleet, MockRouterOSDevice, MockRouterOSSession
from .registry_data import REGISTRY_HEADER, registry_row

__all__ = ["NEIGHBOR_OUTPUT", "MockFleet", "MockRouterOSDevice", "MockRouterOSSession", "REGISTRY_HEADER", "registry_row"]
