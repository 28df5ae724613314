from __future__ import annotations


class ShopSyncError(RuntimeError):
    """Base for every failure surfaced by shopsync."""


class ConfigError(ShopSyncError):
    """Shop or partner credentials are missing."""


class AuthError(ShopSyncError):
    """Token refresh failed, or the API rejected a freshly refreshed token."""


class ValidationError(ShopSyncError):
    """Bad invocation parameters, or an `error_param*` answer from the API."""


class TransportError(ShopSyncError):
    def __init__(self, message: str, *, code: str | None = None):
        super().__init__(message)
        self.code = code


class PersistenceError(ShopSyncError):
    pass


class ScheduleExecutionError(ShopSyncError):
    pass


class SyncInProgressError(ShopSyncError):
    def __init__(self, message: str = "Sync is already in progress"):
        super().__init__(message)
