"""Error taxonomy shared by the store, the log pipeline and the bridge."""

from __future__ import annotations


class StorageUnavailable(Exception):
    """A read or write against the persisted store failed (quota, permission, I/O)."""


class MalformedRecord(ValueError):
    """A foreign or corrupt note record that could not be migrated."""


class BridgeTimeout(TimeoutError):
    """No response arrived on the bridge before the deadline.

    Raised internally by the bridge client and converted into an empty result;
    callers never see it.
    """
