"""Two-party room registry with pluggable storage."""
from __future__ import annotations

import asyncio
import enum
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Protocol

ROOM_CAPACITY = 2


class JoinStatus(str, enum.Enum):
    JOINED = "joined"
    ALREADY_JOINED = "already-joined"
    FULL = "full"


@dataclass(slots=True)
class JoinResult:
    status: JoinStatus
    room_id: str
    occupants: list[str]
    initiator: str | None = None
    previous: Optional["LeaveResult"] = None

    @property
    def admitted(self) -> bool:
        return self.status is not JoinStatus.FULL


@dataclass(slots=True)
class LeaveResult:
    room_id: str
    remaining: list[str] = field(default_factory=list)


class RoomStore(Protocol):
    """Storage backend for room membership."""

    def members(self, room_id: str) -> List[str]: ...

    def save(self, room_id: str, members: List[str]) -> None: ...

    def discard(self, room_id: str) -> None: ...

    def room_of(self, connection_id: str) -> Optional[str]: ...

    def assign(self, connection_id: str, room_id: str | None) -> None: ...


class InMemoryRoomStore:
    """Process-local store; rooms vanish with the process."""

    def __init__(self) -> None:
        self._rooms: Dict[str, List[str]] = {}
        self._membership: Dict[str, str] = {}

    def members(self, room_id: str) -> List[str]:
        return list(self._rooms.get(room_id, []))

    def save(self, room_id: str, members: List[str]) -> None:
        self._rooms[room_id] = list(members)

    def discard(self, room_id: str) -> None:
        self._rooms.pop(room_id, None)

    def room_of(self, connection_id: str) -> Optional[str]:
        return self._membership.get(connection_id)

    def assign(self, connection_id: str, room_id: str | None) -> None:
        if room_id is None:
            self._membership.pop(connection_id, None)
        else:
            self._membership[connection_id] = room_id

    def __len__(self) -> int:
        return len(self._rooms)


class RoomRegistry:
    """Track which connections occupy which room.

    Admission is a single test-and-set under the registry lock, so the
    transition to a full room and the initiator choice happen exactly once.
    """

    def __init__(self, store: RoomStore | None = None, capacity: int = ROOM_CAPACITY) -> None:
        self._store = store if store is not None else InMemoryRoomStore()
        self._capacity = capacity
        self._lock = asyncio.Lock()

    async def join(self, connection_id: str, room_id: str) -> JoinResult:
        """Admit a connection to ``room_id``, moving it out of any previous room."""

        async with self._lock:
            current = self._store.room_of(connection_id)
            if current == room_id:
                return JoinResult(JoinStatus.ALREADY_JOINED, room_id, self._store.members(room_id))

            members = self._store.members(room_id)
            if len(members) >= self._capacity:
                return JoinResult(JoinStatus.FULL, room_id, members)

            previous = self._remove(connection_id) if current is not None else None

            members.append(connection_id)
            self._store.save(room_id, members)
            self._store.assign(connection_id, room_id)

            initiator = members[0] if len(members) == self._capacity else None
            return JoinResult(JoinStatus.JOINED, room_id, members, initiator=initiator, previous=previous)

    async def leave(self, connection_id: str) -> LeaveResult | None:
        """Remove a connection from its room, discarding the room once empty."""

        async with self._lock:
            return self._remove(connection_id)

    async def room_of(self, connection_id: str) -> str | None:
        async with self._lock:
            return self._store.room_of(connection_id)

    async def occupants(self, room_id: str) -> list[str]:
        async with self._lock:
            return self._store.members(room_id)

    async def others(self, room_id: str, connection_id: str) -> list[str]:
        """Return occupants of ``room_id`` other than ``connection_id``."""

        async with self._lock:
            return [member for member in self._store.members(room_id) if member != connection_id]

    def _remove(self, connection_id: str) -> LeaveResult | None:
        room_id = self._store.room_of(connection_id)
        if room_id is None:
            return None
        self._store.assign(connection_id, None)
        remaining = [member for member in self._store.members(room_id) if member != connection_id]
        if remaining:
            self._store.save(room_id, remaining)
        else:
            self._store.discard(room_id)
        return LeaveResult(room_id=room_id, remaining=remaining)
