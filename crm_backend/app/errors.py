from __future__ import annotations


class StoreError(Exception):
    pass


class StoreValidationError(StoreError):
    pass


class StoreNotFoundError(StoreError):
    pass


class StoreConflictError(StoreError):
    pass


class StoreUnavailableError(StoreError):
    pass
