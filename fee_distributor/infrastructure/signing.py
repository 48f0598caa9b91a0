"""Signing Credential — parses and holds the fee-master secret used to sign transfers.

Invariants:
    - Secret is base64 (standard or urlsafe), decoding to 32 or 64 bytes;
      anything else raises ConfigurationError at startup
    - The raw secret is never logged, repr'd, or returned
    - account_id is a stable, public fingerprint of the secret

Design Decisions:
    - HMAC-SHA256 request signatures: the gateway verifies with the same secret;
      the secret itself never leaves the process
"""

import base64
import binascii
import hashlib
import hmac

from fee_distributor.core.errors import ConfigurationError

_VALID_LENGTHS = (32, 64)


class SigningCredential:
    """Fee-master signing secret."""

    def __init__(self, secret: bytes):
        if len(secret) not in _VALID_LENGTHS:
            raise ConfigurationError(
                f"Signing credential must decode to {' or '.join(map(str, _VALID_LENGTHS))} bytes",
                "signing_credential",
            )
        self._secret = secret
        self._account_id = hashlib.sha256(secret).hexdigest()[:32]

    @classmethod
    def from_encoded(cls, encoded: str) -> "SigningCredential":
        value = (encoded or "").strip()
        if not value:
            raise ConfigurationError(
                "Signing credential is not set", "signing_credential",
            )
        padded = value + "=" * (-len(value) % 4)
        try:
            if "-" in value or "_" in value:
                secret = base64.urlsafe_b64decode(padded)
            else:
                secret = base64.b64decode(padded, validate=True)
        except (binascii.Error, ValueError) as e:
            raise ConfigurationError(
                "Signing credential is not valid base64", "signing_credential",
            ) from e
        return cls(secret)

    @property
    def account_id(self) -> str:
        return self._account_id

    def sign(self, message: bytes) -> str:
        return hmac.new(self._secret, message, hashlib.sha256).hexdigest()

    def __repr__(self) -> str:
        return f"SigningCredential(account_id={self._account_id!r})"
