"""
Leader election boundary.

Only the leader fires schedule ticks. Real multi-node election (database
advisory locks, a coordination service) plugs in behind PeerElection;
LocalPeer is the single-node default that always leads.
"""

from __future__ import annotations

import os
import socket
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Protocol, runtime_checkable


@dataclass(frozen=True)
class PeerInfo:
    node: str
    is_leader: bool
    started_at: datetime = field(default_factory=lambda: datetime.now(UTC))


@runtime_checkable
class PeerElection(Protocol):
    def is_leader(self) -> bool: ...

    def leader_node(self) -> str | None: ...

    def peers(self) -> list[PeerInfo]: ...


class LocalPeer:
    """A single node that is always the leader."""

    def __init__(self, node: str | None = None):
        self.node = node or os.environ.get("PYTAXIS_NODE") or socket.gethostname()
        self._started_at = datetime.now(UTC)

    def __repr__(self) -> str:
        return f"LocalPeer({self.node!r})"

    def is_leader(self) -> bool:
        return True

    def leader_node(self) -> str | None:
        return self.node

    def peers(self) -> list[PeerInfo]:
        return [PeerInfo(node=self.node, is_leader=True, started_at=self._started_at)]
