"""
Device token registry

Robinhood recognizes repeated login attempts as one device only if the same
device_token is presented each time. Tokens live in process memory, are
created lazily per user and dropped after a successful login or a reset.
"""
import logging
import secrets
from typing import Callable, Dict

logger = logging.getLogger(__name__)


def generate_device_token() -> str:
    """32 random hex digits, dashed after the 8th, 12th, 16th and 20th digit"""
    digits = secrets.token_hex(16)
    return f"{digits[:8]}-{digits[8:12]}-{digits[12:16]}-{digits[16:20]}-{digits[20:]}"


class DeviceTokenRegistry:
    def __init__(self, generator: Callable[[], str] = generate_device_token):
        self._generator = generator
        self._tokens: Dict[str, str] = {}

    def get_or_create(self, user_id: str) -> str:
        token = self._tokens.get(user_id)
        if token is None:
            token = self._generator()
            self._tokens[user_id] = token
            logger.debug(f"Created device token for user {user_id}")
        return token

    def clear(self, user_id: str) -> None:
        self._tokens.pop(user_id, None)

    def reset(self, user_id: str) -> None:
        """Force the next login to present a fresh device"""
        self.clear(user_id)
        logger.info(f"Reset device token for user {user_id}")
