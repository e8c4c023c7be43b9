"""Domain errors raised by the ledger, redeem codes, catalog and order flow.

Every error carries a user-facing message; the Telegram layer shows
``str(exc)`` and picks a recovery keyboard by type.
"""

from typing import Optional


class BotError(Exception):
    """Base exception for all domain errors."""

    def __init__(self, message: str) -> None:
        super().__init__(message)


class InsufficientBalance(BotError):
    def __init__(self, required: int, available: int, message: Optional[str] = None) -> None:
        super().__init__(
            message or f"Not enough limit. Your current limit: {available}, links requested: {required}"
        )
        self.required = required
        self.available = available


class LimitChanged(InsufficientBalance):
    """Balance dropped between link submission and confirmation."""

    def __init__(self, required: int, available: int) -> None:
        super().__init__(
            required,
            available,
            f"Your limit changed since the order was prepared ({available} left, {required} needed). "
            "Nothing was charged, please start a new order.",
        )


class NoValidLinks(BotError):
    def __init__(self) -> None:
        super().__init__("No valid links detected. Send links starting with http or https, one per line.")


class CatalogServiceUnavailable(BotError):
    def __init__(self, service_id: Optional[str] = None) -> None:
        if service_id is None:
            message = "Could not fetch services from the provider."
        else:
            message = f"Required service {service_id} is not offered by the provider right now."
        super().__init__(message)
        self.service_id = service_id


class CatalogPriceExceeded(BotError):
    def __init__(self, service_id: str, price: float, max_price: float) -> None:
        super().__init__(f"Service {service_id} price {price:g} exceeds the allowed maximum {max_price:g}.")
        self.service_id = service_id
        self.price = price
        self.max_price = max_price


class ExternalApiError(BotError):
    """A single External Order API call failed (transport, timeout or status=false)."""

    def __init__(self, action: str, detail: str) -> None:
        super().__init__(f"Provider API '{action}' failed: {detail}")
        self.action = action
        self.detail = detail


class RedeemCodeNotFound(BotError):
    def __init__(self) -> None:
        super().__init__("Invalid redeem code. Code not found.")


class RedeemCodeAlreadyConsumed(BotError):
    def __init__(self) -> None:
        super().__init__("This code has already been redeemed.")


class RedeemFileInvalid(BotError):
    def __init__(self, reason: str = "The file has been tampered with.") -> None:
        super().__init__(f"Invalid redeem code file. {reason}")


class SessionExpired(BotError):
    def __init__(self) -> None:
        super().__init__("Order session expired. Please start a new order.")


class BatchInProgress(BotError):
    def __init__(self) -> None:
        super().__init__("An order is being processed right now. Please wait until it finishes.")


class OrderNotFound(BotError):
    def __init__(self, order_id) -> None:
        super().__init__(f"Order #{order_id} not found.")
        self.order_id = order_id
