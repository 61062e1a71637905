"""
Single-use link tokens for surveys and reminder confirmations
"""
import secrets

from legalops.config import get_settings
from legalops.exceptions import TokenExhaustedError
from legalops.services.store import ObligationStore

MIN_TOKEN_BYTES = 16  # 128 bits


def generate_token(nbytes: int | None = None) -> str:
    """URL-safe random token"""
    nbytes = max(nbytes or get_settings().TOKEN_BYTES, MIN_TOKEN_BYTES)
    return secrets.token_urlsafe(nbytes)


class TokenIssuer:
    """Issues tokens unique across recipients and reminders, including this batch"""

    def __init__(self, store: ObligationStore, max_attempts: int | None = None):
        self.store = store
        self.max_attempts = max_attempts or get_settings().TOKEN_MAX_ATTEMPTS
        self._issued: set[str] = set()

    async def issue(self) -> str:
        for _ in range(self.max_attempts):
            token = generate_token()
            if token in self._issued or await self.store.token_exists(token):
                continue
            self._issued.add(token)
            return token
        raise TokenExhaustedError(f"Could not issue a unique token after {self.max_attempts} attempts")
