import base64
import binascii
import hashlib
import hmac
import os
from functools import lru_cache

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from app.core.config import get_settings
from app.schemas.devices import EncryptedPayload

ENCRYPTED_PREFIX = "enc.v1:"
KEY_LENGTH = 32
IV_LENGTH = 12
TAG_LENGTH = 16
MASK_VISIBLE_CHARS = 4


class CryptoError(Exception):
    pass


class ConfigError(CryptoError):
    pass


class EmptyInputError(CryptoError):
    pass


class DecryptionError(CryptoError):
    pass


def _b64encode(raw: bytes) -> str:
    return base64.b64encode(raw).decode("ascii")


def _b64decode(value: str) -> bytes:
    try:
        return base64.b64decode(value.encode("ascii"), validate=True)
    except (binascii.Error, UnicodeEncodeError) as exc:
        raise DecryptionError("Encrypted payload is not valid base64") from exc


class CryptoCodec:
    def __init__(self, encryption_key: str | None, hash_secret: str | None) -> None:
        self._encryption_key = encryption_key
        self._hash_secret = hash_secret

    @classmethod
    def from_settings(cls) -> "CryptoCodec":
        settings = get_settings()
        return cls(settings.pii_enc_key, settings.token_hash_secret)

    def _key(self) -> bytes:
        if not self._encryption_key:
            raise ConfigError("PII_ENC_KEY must be configured")
        try:
            key = base64.b64decode(self._encryption_key.encode("ascii"), validate=True)
        except (binascii.Error, UnicodeEncodeError) as exc:
            raise ConfigError("PII_ENC_KEY must be base64 encoded") from exc
        if len(key) != KEY_LENGTH:
            raise ConfigError(f"PII_ENC_KEY must decode to {KEY_LENGTH} bytes")
        return key

    def _secret(self) -> bytes:
        if not self._hash_secret:
            raise ConfigError("TOKEN_HASH_SECRET must be configured")
        if self._hash_secret == self._encryption_key:
            raise ConfigError("TOKEN_HASH_SECRET must differ from PII_ENC_KEY")
        return self._hash_secret.encode("utf-8")

    def validate(self) -> None:
        self._key()
        self._secret()

    def encrypt(self, plaintext: str) -> EncryptedPayload:
        if not plaintext:
            raise EmptyInputError("Cannot encrypt empty payload")
        key = self._key()
        iv = os.urandom(IV_LENGTH)
        # AESGCM appends the tag to the ciphertext
        sealed = AESGCM(key).encrypt(iv, plaintext.encode("utf-8"), None)
        return EncryptedPayload(
            ct=_b64encode(sealed[:-TAG_LENGTH]),
            iv=_b64encode(iv),
            tag=_b64encode(sealed[-TAG_LENGTH:]),
        )

    @staticmethod
    def serialize(payload: EncryptedPayload) -> str:
        return f"{ENCRYPTED_PREFIX}{payload.iv}.{payload.tag}.{payload.ct}"

    @staticmethod
    def is_encrypted(value: str | None) -> bool:
        return isinstance(value, str) and value.startswith(ENCRYPTED_PREFIX)

    def _parse(self, value: str) -> EncryptedPayload:
        parts = value[len(ENCRYPTED_PREFIX):].split(".")
        if len(parts) != 3:
            raise DecryptionError("Invalid encrypted payload format")
        iv, tag, ct = parts
        return EncryptedPayload(ct=ct, iv=iv, tag=tag)

    def decrypt(self, value: str | EncryptedPayload | None) -> str:
        # strings without the prefix predate encryption and are returned as stored
        if not value:
            return ""
        if isinstance(value, str):
            if not self.is_encrypted(value):
                return value
            payload = self._parse(value)
        else:
            payload = value

        key = self._key()
        iv = _b64decode(payload.iv)
        tag = _b64decode(payload.tag)
        ct = _b64decode(payload.ct)
        if len(iv) != IV_LENGTH or len(tag) != TAG_LENGTH:
            raise DecryptionError("Encrypted payload has an invalid iv or tag length")
        try:
            plain = AESGCM(key).decrypt(iv, ct + tag, None)
        except InvalidTag as exc:
            raise DecryptionError("Authentication tag verification failed") from exc
        try:
            return plain.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise DecryptionError("Decrypted payload is not valid UTF-8") from exc

    def hash(self, plaintext: str) -> str:
        return hmac.new(self._secret(), plaintext.encode("utf-8"), hashlib.sha256).hexdigest()

    @staticmethod
    def mask(value: str | None) -> str | None:
        if not value:
            return None
        if len(value) <= MASK_VISIBLE_CHARS:
            return "***"
        return f"***{value[-MASK_VISIBLE_CHARS:]}"


@lru_cache(maxsize=1)
def get_codec() -> CryptoCodec:
    return CryptoCodec.from_settings()


def clear_codec_cache() -> None:
    get_codec.cache_clear()
