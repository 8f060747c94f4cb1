"""Pytest configuration and fixtures."""

from typing import Dict, List, Optional

import pytest
from kubernetes.client import (
    V1Node,
    V1NodeAddress,
    V1NodeCondition,
    V1NodeStatus,
    V1ObjectMeta,
)


@pytest.fixture
def make_node():
    """Factory for V1Node objects.

    ``ready`` may be True, False, "Unknown" or None (no Ready condition at all).
    """

    def _make_node(
        name: str,
        external_ips: Optional[List[str]] = None,
        internal_ips: Optional[List[str]] = None,
        ready=True,
        labels: Optional[Dict[str, str]] = None,
        resource_version: str = "1",
    ) -> V1Node:
        conditions = [V1NodeCondition(type="MemoryPressure", status="False")]
        if ready is not None:
            if ready is True:
                status = "True"
            elif ready is False:
                status = "False"
            else:
                status = str(ready)
            conditions.append(V1NodeCondition(type="Ready", status=status))

        addresses = [V1NodeAddress(type="InternalIP", address=ip) for ip in internal_ips or []]
        addresses += [V1NodeAddress(type="ExternalIP", address=ip) for ip in external_ips or []]
        addresses.append(V1NodeAddress(type="Hostname", address=name))

        return V1Node(
            metadata=V1ObjectMeta(
                name=name, labels=labels or {}, resource_version=resource_version
            ),
            status=V1NodeStatus(conditions=conditions, addresses=addresses),
        )

    return _make_node
