"""Error taxonomy shared by the sync engine components."""

from __future__ import annotations

from typing import Optional


class LastMileError(Exception):
    """Base class for engine errors."""


class InvalidCode(LastMileError):
    """Raised when a scanned code cannot be decoded into a shipment id (no I/O performed)."""

    def __init__(self, code: str):
        super().__init__(f"Unreadable code: {code[:50]!r}")
        self.code = code


class NotFoundAcrossAccounts(LastMileError):
    """Raised when no candidate account holds the scanned shipment."""

    def __init__(self, shipment_id: str, attempted: int):
        super().__init__(
            f"Shipment {shipment_id} was not found in any of {attempted} connected "
            f"account(s). Check the label."
        )
        self.shipment_id = shipment_id
        self.attempted = attempted


class ConflictError(LastMileError):
    """A package is already held by a different driver."""

    def __init__(
        self,
        shipment_id: str,
        holder_driver_id: int,
        holder_name: Optional[str] = None,
        holder_phone: Optional[str] = None,
    ):
        holder = holder_name or f"driver {holder_driver_id}"
        if holder_phone:
            holder = f"{holder} ({holder_phone})"
        super().__init__(f"Package {shipment_id} is already with {holder}")
        self.shipment_id = shipment_id
        self.holder_driver_id = holder_driver_id
        self.holder_name = holder_name
        self.holder_phone = holder_phone


class PersistenceConflict(LastMileError):
    """A unique constraint rejected a write made by a concurrent request."""


class AccountNotFoundError(LastMileError):
    """No marketplace account with the given id exists for the owner."""

    def __init__(self, owner_id: str, account_id: int):
        super().__init__(f"Marketplace account {account_id} not found for owner {owner_id}")
        self.owner_id = owner_id
        self.account_id = account_id


class TokenExpiredNeedsReconnect(LastMileError):
    """The refresh token was rejected; an operator must reconnect the account."""

    def __init__(self, account_id: int, detail: str = ""):
        super().__init__(
            f"Session expired for marketplace account {account_id}; reconnect it in settings"
        )
        self.account_id = account_id
        self.detail = detail


class MarketplaceError(LastMileError):
    """Base class for errors returned by the marketplace API."""

    def __init__(self, message: str, status: Optional[int] = None, body: str = ""):
        super().__init__(message)
        self.status = status
        self.body = body


class RetryableTransportError(MarketplaceError):
    """Network error, 5xx or 429 that persisted through every retry."""


class NotFoundError(MarketplaceError):
    """The requested resource does not exist for this account (HTTP 404)."""


class ApiError(MarketplaceError):
    """Non-retryable client error (4xx other than 401/404/429)."""
