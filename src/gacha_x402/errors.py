"""Error taxonomy shared by the gateway, the orchestrator and the executor."""

from __future__ import annotations

from typing import Any, Dict, Optional


class GachaX402Error(Exception):
    """Base error. ``status_code`` is the HTTP status the gateway answers with."""

    status_code = 500
    code = "internal_error"

    def __init__(self, message: Optional[str] = None) -> None:
        super().__init__(message or self.default_message())
        self.message = str(self)

    @classmethod
    def default_message(cls) -> str:
        return cls.__name__

    def to_body(self) -> Dict[str, Any]:
        return {"error": self.message, "code": self.code}


# Header / negotiation


class MalformedHeader(GachaX402Error):
    status_code = 400
    code = "malformed_header"

    @classmethod
    def default_message(cls) -> str:
        return "Invalid payment header"


# Payment executor (client side)


class PaymentError(GachaX402Error):
    """Raised by the payment executor; surfaced to the user, never retried."""

    status_code = 402
    code = "payment_failed"


class WrongNetwork(PaymentError):
    code = "wrong_network"


class NoAccount(PaymentError):
    code = "no_account"

    @classmethod
    def default_message(cls) -> str:
        return "No wallet account available"


class InsufficientFunds(PaymentError):
    code = "insufficient_funds"

    @classmethod
    def default_message(cls) -> str:
        return "Insufficient funds for transfer"


class TransferFailed(PaymentError):
    code = "transfer_failed"


# Gateway side


class PaymentVerificationFailed(GachaX402Error):
    status_code = 402
    code = "payment_verification_failed"

    @classmethod
    def default_message(cls) -> str:
        return "Payment verification failed"


class PaymentReplayed(GachaX402Error):
    status_code = 409
    code = "payment_replayed"

    @classmethod
    def default_message(cls) -> str:
        return "Payment already used"


class UnknownDevice(GachaX402Error):
    status_code = 404
    code = "device_not_found"

    @classmethod
    def default_message(cls) -> str:
        return "Device not found"


class UnsupportedCommand(GachaX402Error):
    status_code = 400
    code = "unsupported_command"


class DeviceOffline(GachaX402Error):
    status_code = 503
    code = "device_offline"

    @classmethod
    def default_message(cls) -> str:
        return "Device offline"


class DeviceBusy(GachaX402Error):
    status_code = 409
    code = "device_busy"

    @classmethod
    def default_message(cls) -> str:
        return "Device is busy with another command"


class DeviceTimeout(GachaX402Error):
    status_code = 504
    code = "device_timeout"

    @classmethod
    def default_message(cls) -> str:
        return "Device did not respond in time"


class DeviceCommandFailed(GachaX402Error):
    status_code = 502
    code = "device_command_failed"


# Fee management


class InvalidFee(GachaX402Error):
    status_code = 400
    code = "invalid_fee"

    @classmethod
    def default_message(cls) -> str:
        return "Invalid fee. Must be between 0.001 and 999 USDC"


class FeeLocked(GachaX402Error):
    status_code = 403
    code = "fee_locked"

    @classmethod
    def default_message(cls) -> str:
        return "Fee for this device cannot be changed"


class NotAuthorized(GachaX402Error):
    status_code = 403
    code = "not_authorized"

    @classmethod
    def default_message(cls) -> str:
        return "Wallet is not allowed to perform this action"
