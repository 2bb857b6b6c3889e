from __future__ import annotations

import io

from cryptography.fernet import Fernet, InvalidToken
from dotenv.parser import parse_stream

from config_controller.src.errors import DecryptionFailed

ENCRYPTED_PREFIX = "encrypted:"


def _fernet(decryption_key: str) -> Fernet:
    try:
        return Fernet(decryption_key.strip().encode())
    except (ValueError, TypeError) as exc:
        raise DecryptionFailed("Decryption key is not a valid Fernet key") from exc


def encrypt_value(value: str, encryption_key: str) -> str:
    """Return ``value`` as an ``encrypted:<token>`` string decryptable by :func:`parse_env_content`."""
    token = _fernet(encryption_key).encrypt(value.encode("utf-8"))
    return f"{ENCRYPTED_PREFIX}{token.decode('ascii')}"


def parse_env_content(content: str, decryption_key: str | None = None) -> dict[str, str]:
    """Parse dotenv text into a flat mapping, decrypting ``encrypted:`` values.

    Quoting, comments and ``export`` prefixes follow python-dotenv. Variable
    interpolation is not applied; values containing ``$`` are copied verbatim.
    Plain values pass through even when a key is supplied.
    """
    fernet = _fernet(decryption_key) if decryption_key is not None else None
    values: dict[str, str] = {}

    for binding in parse_stream(io.StringIO(content)):
        if binding.error:
            raise DecryptionFailed(f"Malformed env content at line {binding.original.line}")
        if binding.key is None:
            continue

        value = binding.value or ""
        if value.startswith(ENCRYPTED_PREFIX):
            if fernet is None:
                raise DecryptionFailed(
                    f"Value for {binding.key} is encrypted but no decryption key was provided"
                )
            try:
                value = fernet.decrypt(value[len(ENCRYPTED_PREFIX):].encode("ascii")).decode("utf-8")
            except (InvalidToken, UnicodeError) as exc:
                raise DecryptionFailed(f"Failed to decrypt value for {binding.key}") from exc
        values[binding.key] = value

    return values
