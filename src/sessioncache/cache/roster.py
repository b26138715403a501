"""
Live roster of entities connected to this process.

The cache asks the roster two things: whether an entity is still present
(departed entities get a forced final save) and to disconnect an entity
whose session is held by another process.

`LocalRoster` is an in-process implementation: the hosting application
calls `join` / `leave` from its own connection handlers.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, List, Optional, Protocol, Sequence, runtime_checkable

from sessioncache.cache.models import Entity
from sessioncache.core.logging.logger import get_logger

logger = get_logger(__name__)


@runtime_checkable
class Roster(Protocol):
    def list_active_entities(self) -> Sequence[Entity]:
        ...

    def is_entity_present(self, entity: Entity) -> bool:
        ...

    def kick(self, entity: Entity, message: str) -> None:
        ...


@dataclass(slots=True, frozen=True)
class Member:
    entity_id: int
    name: str = ""


class LocalRoster:
    def __init__(self, members: Sequence[Entity] = ()) -> None:
        self._members: Dict[int, Entity] = {m.entity_id: m for m in members}
        self.kicked: Dict[int, str] = {}

    def join(self, entity: Entity) -> None:
        self._members[entity.entity_id] = entity
        self.kicked.pop(entity.entity_id, None)

    def leave(self, entity: Entity) -> None:
        self._members.pop(entity.entity_id, None)

    def get(self, entity_id: int) -> Optional[Entity]:
        return self._members.get(entity_id)

    def list_active_entities(self) -> List[Entity]:
        return list(self._members.values())

    def is_entity_present(self, entity: Entity) -> bool:
        return entity.entity_id in self._members

    def kick(self, entity: Entity, message: str) -> None:
        """Disconnect `entity` with a user-facing `message`."""
        self._members.pop(entity.entity_id, None)
        self.kicked[entity.entity_id] = message
        logger.info(
            "Entity kicked",
            extra={"entity_id": entity.entity_id, "kick_message": message},
        )
