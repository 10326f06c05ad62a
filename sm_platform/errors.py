# sm_platform/errors.py
# Error hierarchy shared by the sync engine, remote client and services.
# Copyright (c) 2025-2026 CrossWatch / Cenodude (https://github.com/cenodude/CrossWatch)
from __future__ import annotations


class MirrorError(RuntimeError):
    pass


class ConfigError(MirrorError):
    pass


class RemoteAPIError(MirrorError):
    def __init__(self, message: str, *, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


class TransientFetchError(RemoteAPIError):
    """Network/timeout failure that is worth retrying at the page level."""


class WindowMismatchError(MirrorError):
    pass


class ReconciliationConflict(MirrorError):
    pass


class SyncCancelled(Exception):
    """Cooperative abort. Not a failure."""


__all__ = [
    "MirrorError",
    "ConfigError",
    "RemoteAPIError",
    "TransientFetchError",
    "WindowMismatchError",
    "ReconciliationConflict",
    "SyncCancelled",
]
