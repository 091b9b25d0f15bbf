from __future__ import annotations

from typing import Any, Dict, Optional


class ScanRejected(Exception):
    """A recognized QR code that failed validation.

    ``code`` is stable and machine-readable so the operator UI can decide
    whether to retry or escalate; ``message`` is shown to the scanning staff.
    """

    code = "Rejected"

    def __init__(self, message: str, **details: Any) -> None:
        super().__init__(message)
        self.message = message
        self.details: Dict[str, Any] = details

    def as_dict(self) -> Dict[str, Any]:
        return {"code": self.code, "message": self.message, "details": self.details}


class BookingNotFound(ScanRejected):
    code = "BookingNotFound"


class BookingNotConfirmed(ScanRejected):
    code = "BookingNotConfirmed"


class WrongDate(ScanRejected):
    code = "WrongDate"


class InvalidSecurityCode(ScanRejected):
    code = "InvalidSecurityCode"


class AlreadyCheckedIn(ScanRejected):
    code = "AlreadyCheckedIn"


class MemberNotFound(ScanRejected):
    code = "MemberNotFound"


class SecurityCodeMismatch(ScanRejected):
    code = "SecurityCodeMismatch"


class NoAvailableCredit(ScanRejected):
    code = "NoAvailableCredit"


class CreditLookupFailed(ScanRejected):
    code = "CreditLookupFailed"


class StoreError(Exception):
    """Any failure talking to the backing data store."""

    def __init__(self, message: str, cause: Optional[BaseException] = None) -> None:
        super().__init__(message)
        self.cause = cause


class CameraError(Exception):
    """Terminal capture failure; scanning must be restarted explicitly."""

    code = "CameraError"
    user_message = "Camera error. Please try again."

    def __init__(self, detail: Optional[str] = None) -> None:
        super().__init__(detail or self.user_message)
        self.detail = detail

    def as_dict(self) -> Dict[str, Any]:
        return {"code": self.code, "message": self.user_message, "detail": self.detail}


class CameraPermissionDenied(CameraError):
    code = "CameraPermissionDenied"
    user_message = "Camera access denied. Please allow camera permissions and try again."


class CameraNotFound(CameraError):
    code = "CameraNotFound"
    user_message = "No camera found. Please connect a camera and try again."


class CameraInUse(CameraError):
    code = "CameraInUse"
    user_message = "Camera is already in use by another application."


class CameraPlaybackFailed(CameraError):
    code = "CameraPlaybackFailed"
    user_message = "Failed to start QR code detection."


class RedemptionError(Exception):
    """Credit redemption could not be applied."""
