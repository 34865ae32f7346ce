"""Durable server-side state: users, sessions and device-flow requests.

All stores share one SQLAlchemy engine (see database.py). Driver failures
surface as TransientStorageError.
"""

from fido_auth.storage.cleanup import CleanupResult, CleanupScheduler
from fido_auth.storage.database import create_db_engine, init_schema, utcnow
from fido_auth.storage.device_flows import DeviceFlowRequest, DeviceFlowStatus, DeviceFlowStore
from fido_auth.storage.sessions import Session, SessionStore, ValidationCache
from fido_auth.storage.users import User, UserDirectory

__all__ = [
    "CleanupResult",
    "CleanupScheduler",
    "DeviceFlowRequest",
    "DeviceFlowStatus",
    "DeviceFlowStore",
    "Session",
    "SessionStore",
    "User",
    "UserDirectory",
    "ValidationCache",
    "create_db_engine",
    "init_schema",
    "utcnow",
]
