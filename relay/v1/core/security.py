import base64
import hashlib
import json
import secrets
import time
from dataclasses import dataclass, field

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from relay.config.logging import get_logger
from relay.config.settings import Settings

logger = get_logger(__name__)

TOKEN_VERSION = 1
NONCE_SIZE = 12


@dataclass
class Principal:
    """Represents the authenticated user attached to a connection."""

    user_id: int
    roles: list[str] = field(default_factory=list)
    email: str | None = None


def _b64e(b: bytes) -> str:
    return base64.urlsafe_b64encode(b).decode("ascii")


def _b64d(s: str) -> bytes:
    return base64.urlsafe_b64decode(s.encode("ascii"))


class SessionTokenCodec:
    """
    Encrypts and decrypts session tokens exchanged over the WebSocket.

    Tokens are AES-GCM encrypted JSON documents keyed by a SHA-256 digest of
    the application secret. Layout: version byte, 12 byte nonce, ciphertext.
    """

    def __init__(self, settings: Settings):
        self.ttl_seconds = settings.session_token_ttl_s
        self._key = hashlib.sha256(settings.secret_key.encode("utf-8")).digest()

    def encode(self, principal: Principal, now: float | None = None) -> str:
        """Issue a token for a principal."""
        issued_at = time.time() if now is None else now
        document = {
            "user_id": principal.user_id,
            "roles": principal.roles,
            "email": principal.email,
            "exp": int(issued_at + self.ttl_seconds),
        }
        nonce = secrets.token_bytes(NONCE_SIZE)
        ciphertext = AESGCM(self._key).encrypt(
            nonce, json.dumps(document).encode("utf-8"), None
        )
        return _b64e(bytes([TOKEN_VERSION]) + nonce + ciphertext)

    def decode(self, token: str, now: float | None = None) -> Principal | None:
        """Return the principal of a valid token, or None."""
        try:
            raw = _b64d(token)
        except (ValueError, UnicodeEncodeError):
            return None

        if len(raw) <= 1 + NONCE_SIZE or raw[0] != TOKEN_VERSION:
            return None

        nonce, ciphertext = raw[1 : 1 + NONCE_SIZE], raw[1 + NONCE_SIZE :]
        try:
            plaintext = AESGCM(self._key).decrypt(nonce, ciphertext, None)
            document = json.loads(plaintext)
        except (InvalidTag, ValueError):
            logger.warning("Rejected session token")
            return None

        if not isinstance(document, dict):
            return None

        current = time.time() if now is None else now
        if document.get("exp", 0) < current:
            logger.info("Expired session token", user_id=document.get("user_id"))
            return None

        user_id = document.get("user_id")
        if not isinstance(user_id, int):
            return None

        return Principal(
            user_id=user_id,
            roles=list(document.get("roles") or []),
            email=document.get("email"),
        )


class AccessControl:
    """Role based permission checks for realtime actions."""

    def __init__(self, settings: Settings):
        self._rules: dict[tuple[str, str], set[str]] = {
            ("notification", "create"): set(settings.notification_sender_roles),
        }

    def is_allowed(self, principal: Principal, resource: str, action: str) -> bool:
        """Check whether any of the principal's roles grants the action."""
        allowed_roles = self._rules.get((resource, action), set())
        return bool(allowed_roles.intersection(principal.roles))
