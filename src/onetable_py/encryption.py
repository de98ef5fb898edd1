from __future__ import annotations

import base64
import hashlib
import os
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from .errors import CryptoError

IV_LENGTH = 16
TAG_LENGTH = 16
SUPPORTED_CIPHERS = frozenset({"aes-256-gcm"})


@dataclass(frozen=True)
class CipherProfile:
    name: str
    cipher: str
    secret: bytes


def load_profiles(config: Mapping[str, Mapping[str, Any]] | None) -> dict[str, CipherProfile]:
    profiles: dict[str, CipherProfile] = {}
    for name, spec in (config or {}).items():
        cipher = str(spec.get("cipher") or "aes-256-gcm").lower()
        if cipher not in SUPPORTED_CIPHERS:
            raise CryptoError(f"Unsupported cipher {cipher!r} for crypto profile {name!r}", context={"name": name})
        password = spec.get("password")
        if not isinstance(password, str) or not password:
            raise CryptoError(f"Crypto profile {name!r} requires a password", context={"name": name})
        profiles[name] = CipherProfile(
            name=name,
            cipher=cipher,
            secret=hashlib.sha256(password.encode("utf-8")).digest(),
        )
    return profiles


class Cipher:
    """Field encryption using named AES-256-GCM profiles.

    Tokens are ``name:tag:iv:data`` with a base64 tag, hex IV and base64
    ciphertext so encrypted values stay self-describing.
    """

    def __init__(
        self,
        config: Mapping[str, Mapping[str, Any]] | None,
        *,
        rand_bytes: Callable[[int], bytes] = os.urandom,
    ) -> None:
        self._profiles = load_profiles(config)
        self._rand_bytes = rand_bytes

    @property
    def configured(self) -> bool:
        return bool(self._profiles)

    def _profile(self, name: str) -> CipherProfile:
        if not self._profiles:
            raise CryptoError("No database secret or cipher defined")
        profile = self._profiles.get(name)
        if profile is None:
            raise CryptoError(f"Database crypto not defined for {name}", context={"name": name})
        return profile

    def encrypt(self, text: str, name: str = "primary") -> str:
        if not text:
            return text
        profile = self._profile(name)
        iv = self._rand_bytes(IV_LENGTH)
        sealed = AESGCM(profile.secret).encrypt(iv, text.encode("utf-8"), None)
        data, tag = sealed[:-TAG_LENGTH], sealed[-TAG_LENGTH:]
        return ":".join(
            (
                profile.name,
                base64.b64encode(tag).decode("ascii"),
                iv.hex(),
                base64.b64encode(data).decode("ascii"),
            )
        )

    def decrypt(self, token: str) -> str:
        if not token or not isinstance(token, str):
            return token
        parts = token.split(":")
        if len(parts) != 4 or not all(parts):
            return token
        name, tag, iv, data = parts
        profile = self._profile(name)
        try:
            sealed = base64.b64decode(data) + base64.b64decode(tag)
            plain = AESGCM(profile.secret).decrypt(bytes.fromhex(iv), sealed, None)
        except (InvalidTag, ValueError) as err:
            raise CryptoError(f"Cannot decrypt value with crypto profile {name}", context={"name": name}) from err
        return plain.decode("utf-8")
