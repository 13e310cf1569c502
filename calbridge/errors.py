"""Exception types raised across CalBridge."""


class CalBridgeError(Exception):
    """Base class for all CalBridge errors."""


class ValidationError(CalBridgeError):
    """Request is missing required fields or carries invalid values."""


class AdapterError(CalBridgeError):
    """The external calendar provider failed a list/create/update/delete call."""

    def __init__(self, message: str, calendar_name: str = None):
        super().__init__(message)
        self.calendar_name = calendar_name


class StoreFetchError(CalBridgeError):
    """The full local snapshot could not be read; a sync run cannot proceed."""


class PerItemStoreError(CalBridgeError):
    """A single row could not be inserted, updated or deleted."""

    def __init__(self, message: str, label: str = None):
        super().__init__(message)
        self.label = label


class EventNotFoundError(CalBridgeError):
    """No event with the requested id is visible to the caller."""


class SyncInProgressError(CalBridgeError):
    """Another sync run holds the single-writer lock."""
