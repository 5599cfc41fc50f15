"""
Error types raised by the chatter coordinator and its stores.
"""

from typing import Any, Optional


class ChatterError(Exception):
    def __init__(self, code: str, message: str, details: Optional[dict[str, Any]] = None):
        super().__init__(message)
        self.code = code
        self.details = details


class Unauthenticated(ChatterError):
    """Action needs a logged-in connection and there is none."""

    def __init__(self, message: str = "login required", code: str = "unauthenticated"):
        super().__init__(code, message)


class UnknownRecipient(ChatterError):
    def __init__(self, recipient: str):
        super().__init__("unknown_recipient", f"no account for {recipient}", {"recipient": recipient})


class AccountExists(ChatterError):
    def __init__(self, user_id: str):
        super().__init__("account_exists", "user id already registered", {"user_id": user_id})


class UnknownAccount(ChatterError):
    def __init__(self, user_id: str):
        super().__init__("not_found", "user not found", {"user_id": user_id})


class InvalidRequest(ChatterError):
    def __init__(self, message: str):
        super().__init__("invalid_request", message)
