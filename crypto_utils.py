import hmac
import hashlib
import secrets
from typing import Optional, Union
from Crypto.Cipher import AES
from passlib.context import CryptContext
from config import Settings
from errors import DecryptionError, UnsupportedHashAlgorithm

NONCE_SIZE = 16
TAG_SIZE = 16
MAX_RANDOM_ID_BYTES = 64

LEGACY_PBKDF2_TAG = "pbkdf2"
LEGACY_PBKDF2_ITERATIONS = 100_000
# New hashes are never cheaper than the legacy ones they replace
MIN_PASSWORD_HASH_ROUNDS = LEGACY_PBKDF2_ITERATIONS

pwd_context = CryptContext(
    schemes=["pbkdf2_sha256"],
    deprecated="auto",
    pbkdf2_sha256__default_rounds=max(Settings.PASSWORD_HASH_ROUNDS, MIN_PASSWORD_HASH_ROUNDS),
    pbkdf2_sha256__min_rounds=MIN_PASSWORD_HASH_ROUNDS,
)

# Algorithm tags as they appear in "$<tag>$..." strings produced by pwd_context
KNOWN_HASH_TAGS = {"pbkdf2-sha256"}


def _to_bytes(value: Union[str, bytes]) -> bytes:
    return value if isinstance(value, bytes) else value.encode("utf-8")


# ---------- passwords ----------

def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def _hash_tag(stored_hash: str) -> Optional[str]:
    if stored_hash.startswith("$"):
        parts = stored_hash.split("$")
        return parts[1] or None
    if ":" in stored_hash:
        return stored_hash.split(":", 1)[0] or None
    return None


def _verify_legacy_pbkdf2(password: str, stored_hash: str) -> bool:
    parts = stored_hash.split(":")
    if len(parts) != 3:
        return False
    _, salt_hex, hash_hex = parts
    try:
        salt = bytes.fromhex(salt_hex)
        expected = bytes.fromhex(hash_hex)
    except ValueError:
        return False
    derived = hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), salt, LEGACY_PBKDF2_ITERATIONS)
    return hmac.compare_digest(derived, expected)


def verify_password(password: str, stored_hash: str) -> bool:
    """Check a password against a stored hash.

    Malformed hashes fail closed (False). An algorithm tag this service
    does not recognize raises UnsupportedHashAlgorithm: that is a
    configuration problem, not a wrong password.
    """
    if not isinstance(stored_hash, str) or not isinstance(password, str):
        return False
    tag = _hash_tag(stored_hash)
    if tag is None:
        return False
    if tag == LEGACY_PBKDF2_TAG:
        return _verify_legacy_pbkdf2(password, stored_hash)
    if tag not in KNOWN_HASH_TAGS:
        raise UnsupportedHashAlgorithm(f"Unsupported hash algorithm: {tag}")
    try:
        return pwd_context.verify(password, stored_hash)
    except (ValueError, TypeError):
        return False


def password_needs_rehash(stored_hash: str) -> bool:
    if _hash_tag(stored_hash) == LEGACY_PBKDF2_TAG:
        return True
    try:
        return pwd_context.needs_update(stored_hash)
    except ValueError:
        return True


# ---------- symmetric encryption ----------

def encrypt_secret(plaintext: str, key: bytes) -> bytes:
    """AES-GCM encrypt with a fresh nonce; returns nonce + tag + ciphertext."""
    cipher = AES.new(key, AES.MODE_GCM)  # random 16-byte nonce
    ciphertext, tag = cipher.encrypt_and_digest(plaintext.encode("utf-8"))
    return cipher.nonce + tag + ciphertext


def decrypt_secret(encrypted_blob: bytes, key: bytes) -> str:
    if not isinstance(encrypted_blob, (bytes, bytearray)) or len(encrypted_blob) < NONCE_SIZE + TAG_SIZE:
        raise DecryptionError("Encrypted blob is truncated")
    nonce = encrypted_blob[:NONCE_SIZE]
    tag = encrypted_blob[NONCE_SIZE:NONCE_SIZE + TAG_SIZE]
    ciphertext = encrypted_blob[NONCE_SIZE + TAG_SIZE:]
    try:
        cipher = AES.new(key, AES.MODE_GCM, nonce=nonce)
        return cipher.decrypt_and_verify(ciphertext, tag).decode("utf-8")
    except (ValueError, KeyError, UnicodeDecodeError) as e:
        raise DecryptionError("Secret could not be decrypted") from e


# ---------- signatures and digests ----------

def hmac_sign(message: Union[str, bytes], secret: str) -> str:
    return hmac.new(_to_bytes(secret), _to_bytes(message), hashlib.sha256).hexdigest()


def hmac_verify(message: Union[str, bytes], signature: str, secret: str) -> bool:
    """Compare a hex HMAC-SHA256 signature; anything malformed is a mismatch."""
    if not isinstance(signature, str) or not secret:
        return False
    signature = signature.strip()
    if signature.lower().startswith("sha256="):
        signature = signature[len("sha256="):]
    try:
        supplied = bytes.fromhex(signature)
    except ValueError:
        return False
    expected = hmac.new(_to_bytes(secret), _to_bytes(message), hashlib.sha256).digest()
    return hmac.compare_digest(expected, supplied)


def sha256_hex(value: Union[str, bytes]) -> str:
    """Deterministic lookup key. Never use this to protect a secret."""
    return hashlib.sha256(_to_bytes(value)).hexdigest()


def random_id(byte_length: int = 32) -> str:
    if not 1 <= byte_length <= MAX_RANDOM_ID_BYTES:
        raise ValueError(f"byte_length must be between 1 and {MAX_RANDOM_ID_BYTES}")
    return secrets.token_hex(byte_length)


def generate_webhook_secret() -> str:
    return random_id(32)


# ---------- webhook identifiers ----------

class WebhookIdStrategy:
    scheme = ""
    requires_rotation = False

    def generate(self, **context) -> str:
        raise NotImplementedError


class RandomWebhookIdStrategy(WebhookIdStrategy):
    """Full-entropy public identifier (256 bits by default)."""

    scheme = "random"

    def __init__(self, byte_length: int = Settings.WEBHOOK_ID_BYTES):
        if byte_length < 32:
            raise ValueError("Webhook identifiers need at least 256 bits of entropy")
        self.byte_length = byte_length

    def generate(self, **context) -> str:
        return random_id(self.byte_length)


class LegacyHashedWebhookIdStrategy(WebhookIdStrategy):
    """Old scheme: truncated sha256 of secret:shortcut:timestamp.

    Guessable from its inputs. Kept so existing identifiers can be
    recognized and rotated away, never for new webhooks.
    """

    scheme = "legacy"
    requires_rotation = True

    def generate(self, device_secret: str = "", shortcut_id: str = "", timestamp_ms: int = 0, **context) -> str:
        return sha256_hex(f"{device_secret}:{shortcut_id}:{timestamp_ms}")[:32]


DEFAULT_WEBHOOK_ID_STRATEGY = RandomWebhookIdStrategy()

WEBHOOK_ID_STRATEGIES = {
    strategy.scheme: strategy for strategy in (RandomWebhookIdStrategy, LegacyHashedWebhookIdStrategy)
}


def schemes_requiring_rotation() -> list:
    return sorted(scheme for scheme, strategy in WEBHOOK_ID_STRATEGIES.items() if strategy.requires_rotation)
