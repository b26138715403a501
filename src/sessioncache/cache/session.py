"""
Session arbitration: single-writer admission across processes.

Purpose
-------
Every process sharing a backing store stamps the records it has admitted
with a session lock `{active, owner, timestamp}`. Before admitting an
entity, a process inspects the stored lock and decides whether it may take
ownership.

Rules
-----
- A lock is *foreign* when it is active and owned by another process.
- Foreign lock renewed less than `lock_timeout` seconds ago -> REJECT; the
  entity is disconnected with `Config.SESSION_KICK_MESSAGE`.
- Foreign lock older than `lock_timeout` -> TAKEOVER; the owner is presumed
  dead and the lock is reclaimed (logged at info).
- Anything else (no lock, inactive lock, our own lock) -> ADMIT.

Transitions
-----------
- `claim`: `{active: True, owner: self, timestamp: now}` on admission.
- `refresh`: auto-save. Reclaims an inactive stored lock and renews the
  timestamp; version untouched. A foreign lock still within its timeout
  refuses the write instead.
- `release`: clears the lock and bumps `version` in the same write.

The owner identifier is `"<place_id>:<job_id>"`; job ids are unique per
process run so a restarted process never mistakes an old lock for its own.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

from sessioncache.cache.models import Record, SessionLock
from sessioncache.core.config import Config
from sessioncache.core.exceptions import WriteRejectedError
from sessioncache.core.logging.logger import get_logger

logger = get_logger(__name__)


@dataclass(slots=True, frozen=True)
class ProcessIdentity:
    place_id: str
    job_id: str

    @property
    def owner(self) -> str:
        return f"{self.place_id}:{self.job_id}"

    @classmethod
    def from_config(cls) -> "ProcessIdentity":
        return cls(place_id=str(Config.PLACE_ID), job_id=str(Config.JOB_ID))


class Admission(str, Enum):
    ADMIT = "admit"
    TAKEOVER = "takeover"
    REJECT = "reject"


class SessionArbiter:
    def __init__(
        self,
        identity: Optional[ProcessIdentity] = None,
        *,
        lock_timeout: Optional[float] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.identity = identity or ProcessIdentity.from_config()
        self.lock_timeout = lock_timeout if lock_timeout is not None else Config.SESSION_LOCK_TIMEOUT
        self._clock = clock

    @property
    def owner(self) -> str:
        return self.identity.owner

    def now(self) -> int:
        """Current unix time in whole seconds."""
        return int(self._clock())

    # ------------------------------------------------------------------
    # Inspection
    # ------------------------------------------------------------------

    def is_same_session(self, session: Optional[SessionLock]) -> bool:
        return session is not None and session.owner == self.owner

    def is_foreign_active(self, session: Optional[SessionLock]) -> bool:
        return session is not None and session.active and not self.is_same_session(session)

    def lock_age(self, session: SessionLock) -> float:
        if session.timestamp is None:
            return float("inf")
        return self.now() - session.timestamp

    def evaluate(self, record: Optional[Record]) -> Admission:
        """Decide whether `record` may be admitted by this process."""
        session = record.session if record is not None else None
        if not self.is_foreign_active(session):
            return Admission.ADMIT

        age = self.lock_age(session)  # type: ignore[arg-type]
        if age < self.lock_timeout:
            return Admission.REJECT

        logger.info(
            "Stale session lock taken over",
            extra={
                "previous_owner": session.owner,  # type: ignore[union-attr]
                "lock_age_seconds": age,
                "lock_timeout_seconds": self.lock_timeout,
            },
        )
        return Admission.TAKEOVER

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def claim(self, record: Record) -> Record:
        record.session = SessionLock(active=True, owner=self.owner, timestamp=self.now())
        return record

    def refresh(self, record: Record, latest: Optional[Record], key: str = "") -> Record:
        """
        Auto-save transition applied against the latest stored record.

        Raises
        ------
        WriteRejectedError
            If another process holds a lock on the stored record that has
            not yet expired.
        """
        if self.evaluate(latest) is Admission.REJECT:
            raise WriteRejectedError(
                key,
                f"session held by {latest.session.owner}",  # type: ignore[union-attr]
            )

        stored = latest.session if latest is not None else None
        if record.session is None or stored is None or not stored.active:
            record.session = SessionLock(active=True, owner=self.owner)
        record.session.active = True
        record.session.owner = self.owner
        record.session.timestamp = self.now()
        return record

    def release(self, record: Record) -> Record:
        if record.session is None:
            record.session = SessionLock()
        record.session.clear()
        record.version += 1
        return record
