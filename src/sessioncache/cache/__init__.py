"""
Session-locked entity record cache.

Exports the registry, the per-dataset cache service, the scheduler and the
data model they share.
"""

from sessioncache.cache.client import ClientReadEndpoint
from sessioncache.cache.filtering import ContentFilter, PassthroughFilter
from sessioncache.cache.models import CacheEntry, Entity, EntityState, Record, SessionLock
from sessioncache.cache.options import CacheOptions, resolve_options
from sessioncache.cache.reconcile import deep_copy, is_identical, map_leaves, reconcile, reconcile_copy
from sessioncache.cache.registry import CacheRegistry
from sessioncache.cache.roster import LocalRoster, Member, Roster
from sessioncache.cache.scheduler import CacheScheduler, DrainReport
from sessioncache.cache.service import SessionedCache
from sessioncache.cache.session import Admission, ProcessIdentity, SessionArbiter

__all__ = [
    "CacheRegistry",
    "SessionedCache",
    "CacheScheduler",
    "DrainReport",
    "CacheOptions",
    "resolve_options",
    "SessionArbiter",
    "ProcessIdentity",
    "Admission",
    "Record",
    "SessionLock",
    "CacheEntry",
    "Entity",
    "EntityState",
    "Roster",
    "LocalRoster",
    "Member",
    "ContentFilter",
    "PassthroughFilter",
    "ClientReadEndpoint",
    "deep_copy",
    "map_leaves",
    "reconcile",
    "reconcile_copy",
    "is_identical",
]
