"""
Robinhood connector exceptions

Challenges (MFA, device verification, pending approval) are not errors:
they come back as LoginResult values. Only "no session" and upstream
failures are raised.
"""
from typing import Optional


class RobinhoodError(Exception):
    """Base class for Robinhood connector errors"""


class NotConnectedError(RobinhoodError):
    """The user has no valid Robinhood session"""

    def __init__(self, user_id: Optional[str] = None):
        self.user_id = user_id
        super().__init__("Not connected to Robinhood. Please connect first.")


class RobinhoodAPIError(RobinhoodError):
    """
    Upstream failure: transport error, non-2xx status or an unparseable body

    status_code is None for transport errors (timeouts, DNS, resets).
    """

    def __init__(self, message: str, status_code: Optional[int] = None, body: Optional[str] = None):
        self.status_code = status_code
        self.body = body
        super().__init__(message)
