import base64
import os
from binascii import Error as BinasciiError
from typing import Any, Dict, Optional

from jose import JWTError, jwt
from jose.exceptions import ExpiredSignatureError


class AdminAuthError(Exception):
    """Admin WebSocket handshake rejected; carries the close code to use."""

    def __init__(self, close_code: int, reason: str):
        super().__init__(reason)
        self.close_code = close_code
        self.reason = reason


class JWTAuthService:
    """Validates bearer tokens presented by admin dashboard clients."""

    def __init__(self):
        self.algorithm = os.getenv("JWT_ALGORITHM", "HS256")
        # HS256 uses a shared secret, RSA/EC algorithms a PEM public key.
        self.secret = os.getenv("JWT_SECRET") or os.getenv("SECRET_KEY")
        self.public_key = self._load_key(os.getenv("JWT_CERTIFICATE"))

    def decode_token(self, token: str) -> Dict[str, Any]:
        if self.algorithm == "HS256":
            if not self.secret:
                raise RuntimeError("JWT_SECRET/SECRET_KEY is not configured")
            key = self.secret
        else:
            if not self.public_key:
                raise RuntimeError("JWT_CERTIFICATE is not configured")
            key = self.public_key
        return jwt.decode(token, key, algorithms=[self.algorithm])

    def authenticate(self, authorization_header: Optional[str], query_token: Optional[str]) -> Dict[str, Any]:
        """Return the token payload or raise AdminAuthError with the WebSocket close code."""
        token = extract_bearer_token(authorization_header) or query_token
        if not token:
            raise AdminAuthError(4001, "missing token")
        try:
            payload = self.decode_token(token)
        except ExpiredSignatureError:
            raise AdminAuthError(4001, "token expired")
        except JWTError:
            raise AdminAuthError(4003, "invalid token")
        except RuntimeError as exc:
            raise AdminAuthError(4003, str(exc))
        if not payload.get("sub"):
            raise AdminAuthError(4003, "token has no subject")
        return payload

    def _load_key(self, raw_value: str | None) -> str | None:
        """
        Return a PEM key string, decoding base64 input when necessary.
        Accepts either raw PEM text or a base64-encoded PEM.
        """
        if not raw_value:
            return raw_value
        if "BEGIN" in raw_value and "END" in raw_value:
            return raw_value
        try:
            return base64.b64decode(raw_value).decode("utf-8")
        except (BinasciiError, UnicodeDecodeError):
            return raw_value


def extract_bearer_token(authorization_header: Optional[str]) -> Optional[str]:
    if authorization_header and authorization_header.lower().startswith("bearer "):
        return authorization_header.split(" ", 1)[1].strip() or None
    return None
