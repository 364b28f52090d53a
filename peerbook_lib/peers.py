"""
peerbook_lib/peers.py

Peer records received over the push channel.

Principles:
- Records are keyed by name and filtered by kind.
- Patch-style updates: only fields present in an update are applied.
- Records are never deleted here; pruning belongs to the UI.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, fields
from typing import Any, Iterable, Mapping, Optional

from .const import DEFAULT_PEER_KIND


@dataclass(slots=True)
class Peer:
    name: str
    kind: str
    user: Optional[str] = None
    verified: bool = False
    created_on: Optional[float] = None
    verified_on: Optional[float] = None
    last_connected: Optional[float] = None
    online: bool = False
    auth_token: Optional[str] = None

    # Keys the registry sent that have no field here.
    extra: dict[str, Any] = field(default_factory=dict)

    def update(self, record: Mapping[str, Any]) -> tuple[str, ...]:
        """Apply the fields present in record; return the sorted names that changed."""
        changed: list[str] = []
        for key, value in record.items():
            if key in _FIELD_NAMES:
                if getattr(self, key) != value:
                    setattr(self, key, value)
                    changed.append(key)
            elif self.extra.get(key, _MISSING) != value:
                self.extra[key] = value
                changed.append(key)
        return tuple(sorted(changed))


_MISSING = object()
_FIELD_NAMES = frozenset(f.name for f in fields(Peer) if f.name != "extra")


class PeerIndex:
    """Merge push updates into a stable, insertion-ordered set of peers."""

    def __init__(self, kind: str = DEFAULT_PEER_KIND, *, logger: Optional[logging.Logger] = None) -> None:
        self._kind = kind
        self._peers: dict[str, Peer] = {}
        self._log = logger or logging.getLogger(__name__)

    def __len__(self) -> int:
        return len(self._peers)

    def __contains__(self, name: object) -> bool:
        return name in self._peers

    def get(self, name: str) -> Optional[Peer]:
        return self._peers.get(name)

    @property
    def peers(self) -> list[Peer]:
        return list(self._peers.values())

    def merge(self, records: Iterable[Mapping[str, Any]] | None) -> list[Peer]:
        """Merge records; return the peers that were created or changed."""
        touched: list[Peer] = []
        if not records:
            return touched
        for record in records:
            if not isinstance(record, Mapping):
                self._log.debug("Skipping non-object peer record: %r", record)
                continue
            if record.get("kind") != self._kind:
                continue
            name = record.get("name")
            if not isinstance(name, str) or not name:
                self._log.debug("Skipping peer record without a name: %r", record)
                continue
            peer = self._peers.get(name)
            if peer is None:
                peer = Peer(name=name, kind=self._kind)
                self._peers[name] = peer
                peer.update(record)
                touched.append(peer)
                continue
            if peer.update(record):
                touched.append(peer)
        return touched

    def handle_update(self, message: Mapping[str, Any]) -> list[Peer]:
        """Push-update callback: accepts {"peers": [...]} or a single peer record."""
        peers = message.get("peers")
        if isinstance(peers, list):
            return self.merge(peers)
        if "name" in message and "kind" in message:
            return self.merge([message])
        self._log.debug("push update carries no peer records: %s", tuple(message.keys()))
        return []
