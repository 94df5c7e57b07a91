"""
Governance Core - Cryptographic Utilities

Confidentiality, integrity, and identity primitives for the rest of the core:
- Authenticated symmetric encryption (AES-256-GCM, per-call salt and IV)
- Salted, iterated password hashing (PBKDF2-HMAC-SHA512)
- HMAC integrity tags for stored records
- RSA key pairs, signatures, and OAEP envelopes for exported evidence
- Secure random tokens, API keys, and identifiers
- Master key bootstrap (load, or generate and persist)
"""

import base64
import binascii
import hashlib
import hmac
import json
import logging
import os
import secrets
from dataclasses import dataclass, asdict
from pathlib import Path
from typing import Optional, Dict, Any, Union

import jwt
from cryptography.exceptions import InvalidSignature, InvalidTag
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa, padding
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from governance_core.config import SecurityConfig
from governance_core.exceptions import CryptoError, ValidationError

logger = logging.getLogger("governance.crypto")

KEY_LENGTH = 32
IV_LENGTH = 12
SALT_LENGTH = 32
PASSWORD_HASH_LENGTH = 64
API_KEY_PREFIX = "gk_"

KeyMaterial = Union[str, bytes]


# ══════════════════════════════════════════════════════════════════════════════
# SECURE RANDOM
# ══════════════════════════════════════════════════════════════════════════════

def generate_token(length: int = 32) -> str:
    """Generate a cryptographically secure, URL-safe token."""
    return secrets.token_urlsafe(length)


def generate_id(prefix: str = "") -> str:
    """Generate a unique identifier with optional prefix."""
    random_part = secrets.token_hex(16)
    if prefix:
        return f"{prefix}_{random_part}"
    return random_part


def canonical_json(payload: Dict[str, Any]) -> str:
    """Deterministic serialization used for tags and signatures."""
    return json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)


def _to_bytes(value: KeyMaterial) -> bytes:
    return value.encode("utf-8") if isinstance(value, str) else bytes(value)


# ══════════════════════════════════════════════════════════════════════════════
# DATA CONTAINERS
# ══════════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class EncryptedBundle:
    """Hex-encoded AES-GCM output with everything needed to decrypt it."""
    ciphertext: str
    iv: str
    auth_tag: str
    salt: str

    def to_dict(self) -> Dict[str, str]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, str]) -> "EncryptedBundle":
        try:
            return cls(
                ciphertext=data["ciphertext"],
                iv=data["iv"],
                auth_tag=data["auth_tag"],
                salt=data["salt"],
            )
        except (KeyError, TypeError) as e:
            raise CryptoError("Malformed encrypted bundle", cause=e)


@dataclass(frozen=True)
class PasswordHash:
    hash: str
    salt: str


@dataclass(frozen=True)
class KeyPair:
    """PEM-encoded RSA key pair (SPKI public, PKCS#8 private)."""
    public_key: str
    private_key: str


def generate_key_pair(key_size: int = 2048) -> KeyPair:
    """Fresh RSA key pair, PEM encoded."""
    private_key = rsa.generate_private_key(
        public_exponent=65537,
        key_size=key_size,
    )
    private_pem = private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    )
    public_pem = private_key.public_key().public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )
    return KeyPair(public_key=public_pem.decode("ascii"), private_key=private_pem.decode("ascii"))


# ══════════════════════════════════════════════════════════════════════════════
# CRYPTO SERVICE
# ══════════════════════════════════════════════════════════════════════════════

class CryptoService:
    """
    Stateless crypto operations bound to one master key.

    The master key is the default encryption secret and the HMAC key for
    record integrity tags. Every operation is pure given its inputs and
    that key.
    """

    def __init__(self, master_key: bytes, config: Optional[SecurityConfig] = None):
        if not master_key:
            raise CryptoError("Master key must not be empty")
        self._master_key = bytes(master_key)
        self.config = config or SecurityConfig()
        self._aad = self.config.associated_data.encode("utf-8")

    # ── Symmetric encryption ──

    def _derive_key(self, secret: bytes, salt: bytes) -> bytes:
        if not secret:
            raise CryptoError("Key material must not be empty")
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA512(),
            length=KEY_LENGTH,
            salt=salt,
            iterations=self.config.kdf_iterations,
        )
        return kdf.derive(secret)

    def encrypt(self, plaintext: KeyMaterial, key: Optional[KeyMaterial] = None) -> EncryptedBundle:
        """Encrypt with AES-256-GCM under a key derived from `key` or the master key."""
        secret = self._master_key if key is None else _to_bytes(key)
        salt = os.urandom(SALT_LENGTH)
        iv = os.urandom(IV_LENGTH)
        try:
            derived = self._derive_key(secret, salt)
            sealed = AESGCM(derived).encrypt(iv, _to_bytes(plaintext), self._aad)
        except CryptoError:
            raise
        except (ValueError, TypeError) as e:
            logger.error("Encryption failed: %s", e)
            raise CryptoError("Encryption failed", cause=e)

        ciphertext, tag = sealed[:-16], sealed[-16:]
        return EncryptedBundle(
            ciphertext=ciphertext.hex(),
            iv=iv.hex(),
            auth_tag=tag.hex(),
            salt=salt.hex(),
        )

    def decrypt(self, bundle: Union[EncryptedBundle, Dict[str, str]],
                key: Optional[KeyMaterial] = None) -> bytes:
        """Decrypt a bundle. Any authentication failure raises CryptoError."""
        if isinstance(bundle, dict):
            bundle = EncryptedBundle.from_dict(bundle)
        secret = self._master_key if key is None else _to_bytes(key)
        try:
            salt = bytes.fromhex(bundle.salt)
            iv = bytes.fromhex(bundle.iv)
            sealed = bytes.fromhex(bundle.ciphertext) + bytes.fromhex(bundle.auth_tag)
            derived = self._derive_key(secret, salt)
            return AESGCM(derived).decrypt(iv, sealed, self._aad)
        except CryptoError:
            raise
        except InvalidTag as e:
            logger.warning("Decryption rejected: authentication tag mismatch")
            raise CryptoError("Decryption failed: authentication tag mismatch", cause=e)
        except (ValueError, TypeError) as e:
            logger.error("Decryption failed: %s", e)
            raise CryptoError("Decryption failed", cause=e)

    def decrypt_text(self, bundle: Union[EncryptedBundle, Dict[str, str]],
                     key: Optional[KeyMaterial] = None) -> str:
        try:
            return self.decrypt(bundle, key).decode("utf-8")
        except UnicodeDecodeError as e:
            raise CryptoError("Decrypted payload is not UTF-8", cause=e)

    def encrypt_sensitive_data(self, data: Dict[str, Any], key: Optional[KeyMaterial] = None) -> str:
        """Encrypt a JSON-serializable mapping into a JSON string bundle."""
        bundle = self.encrypt(json.dumps(data), key)
        return json.dumps(bundle.to_dict())

    def decrypt_sensitive_data(self, encrypted_json: str, key: Optional[KeyMaterial] = None) -> Dict[str, Any]:
        try:
            bundle = json.loads(encrypted_json)
        except (ValueError, TypeError) as e:
            raise CryptoError("Malformed encrypted payload", cause=e)
        return json.loads(self.decrypt_text(bundle, key))

    # ── Passwords ──

    def hash_password(self, password: str, salt: Optional[str] = None) -> PasswordHash:
        actual_salt = secrets.token_hex(SALT_LENGTH) if salt is None else salt
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA512(),
            length=PASSWORD_HASH_LENGTH,
            salt=actual_salt.encode("utf-8"),
            iterations=self.config.password_iterations,
        )
        digest = kdf.derive(password.encode("utf-8"))
        return PasswordHash(hash=digest.hex(), salt=actual_salt)

    def verify_password(self, password: str, password_hash: str, salt: str) -> bool:
        """Constant-time password check. Malformed input is a mismatch."""
        if not all(isinstance(v, str) for v in (password, password_hash, salt)):
            return False
        computed = self.hash_password(password, salt).hash
        return hmac.compare_digest(computed.encode("ascii"), password_hash.encode("ascii", "ignore"))

    # ── Tokens ──

    def generate_token(self, length: int = 32) -> str:
        return generate_token(length)

    def generate_api_key(self) -> str:
        return f"{API_KEY_PREFIX}{secrets.token_urlsafe(24)}"

    # ── Integrity tags ──

    def integrity_tag(self, payload: Dict[str, Any]) -> str:
        """HMAC-SHA256 over the canonical serialization of `payload`."""
        message = canonical_json(payload).encode("utf-8")
        return hmac.new(self._master_key, message, hashlib.sha256).hexdigest()

    def verify_integrity_tag(self, payload: Dict[str, Any], tag: str) -> bool:
        return hmac.compare_digest(self.integrity_tag(payload), tag or "")

    # ── Asymmetric ──

    def generate_key_pair(self) -> KeyPair:
        return generate_key_pair(self.config.rsa_key_size)

    @staticmethod
    def _load_private_key(pem: KeyMaterial):
        try:
            key = serialization.load_pem_private_key(_to_bytes(pem), password=None)
        except (ValueError, TypeError) as e:
            raise CryptoError("Unusable private key", cause=e)
        if not isinstance(key, rsa.RSAPrivateKey):
            raise CryptoError("Private key must be RSA")
        return key

    @staticmethod
    def _load_public_key(pem: KeyMaterial):
        try:
            key = serialization.load_pem_public_key(_to_bytes(pem))
        except (ValueError, TypeError) as e:
            raise CryptoError("Unusable public key", cause=e)
        if not isinstance(key, rsa.RSAPublicKey):
            raise CryptoError("Public key must be RSA")
        return key

    @staticmethod
    def _pss() -> padding.PSS:
        return padding.PSS(mgf=padding.MGF1(hashes.SHA256()), salt_length=padding.PSS.MAX_LENGTH)

    @staticmethod
    def _oaep() -> padding.OAEP:
        return padding.OAEP(mgf=padding.MGF1(algorithm=hashes.SHA256()), algorithm=hashes.SHA256(), label=None)

    def sign(self, data: KeyMaterial, private_key: KeyMaterial) -> str:
        """RSA-PSS/SHA-256 signature, hex encoded."""
        key = self._load_private_key(private_key)
        return key.sign(_to_bytes(data), self._pss(), hashes.SHA256()).hex()

    def verify(self, data: KeyMaterial, signature: str, public_key: KeyMaterial) -> bool:
        key = self._load_public_key(public_key)
        try:
            key.verify(bytes.fromhex(signature), _to_bytes(data), self._pss(), hashes.SHA256())
            return True
        except (InvalidSignature, ValueError):
            return False

    def encrypt_with_public_key(self, data: str, public_key: KeyMaterial) -> str:
        key = self._load_public_key(public_key)
        try:
            encrypted = key.encrypt(data.encode("utf-8"), self._oaep())
        except ValueError as e:
            raise CryptoError("Public-key encryption failed", cause=e)
        return base64.b64encode(encrypted).decode("ascii")

    def decrypt_with_private_key(self, encrypted: str, private_key: KeyMaterial) -> str:
        key = self._load_private_key(private_key)
        try:
            return key.decrypt(base64.b64decode(encrypted), self._oaep()).decode("utf-8")
        except (ValueError, binascii.Error) as e:
            raise CryptoError("Private-key decryption failed", cause=e)

    # ── Signed claims (JWT) ──

    def sign_claims(self, claims: Dict[str, Any], private_key: KeyMaterial) -> str:
        """Encode claims as an RS256 JWT."""
        self._load_private_key(private_key)
        try:
            return jwt.encode(claims, _to_bytes(private_key), algorithm="RS256")
        except jwt.PyJWTError as e:
            raise CryptoError("Token signing failed", cause=e)

    def verify_claims(self, token: str, public_key: KeyMaterial) -> Dict[str, Any]:
        self._load_public_key(public_key)
        try:
            return jwt.decode(token, _to_bytes(public_key), algorithms=["RS256"])
        except jwt.PyJWTError as e:
            raise CryptoError("Token verification failed", cause=e)


# ══════════════════════════════════════════════════════════════════════════════
# MASTER KEY BOOTSTRAP
# ══════════════════════════════════════════════════════════════════════════════

def decode_master_key(encoded: str) -> bytes:
    """Accept a hex or urlsafe-base64 encoded key of at least 256 bits."""
    raw = encoded.strip()
    try:
        key = bytes.fromhex(raw)
    except ValueError:
        try:
            key = base64.urlsafe_b64decode(raw + "=" * (-len(raw) % 4))
        except (ValueError, binascii.Error) as e:
            raise ValidationError("Master key is neither hex nor base64", cause=e)
    if len(key) < KEY_LENGTH:
        raise ValidationError(
            f"Master key must be at least {KEY_LENGTH * 8} bits",
            context={"length_bits": len(key) * 8},
        )
    return key


def load_or_create_master_key(config: SecurityConfig) -> bytes:
    """
    Resolve the master key: explicit value, then key file, then a fresh
    random key persisted to the key file with owner-only permissions.
    """
    if config.master_key:
        return decode_master_key(config.master_key)

    path = Path(config.key_file)
    if path.exists():
        return decode_master_key(path.read_text(encoding="ascii"))

    path.parent.mkdir(parents=True, exist_ok=True)
    key = os.urandom(KEY_LENGTH)
    try:
        fd = os.open(str(path), os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
    except FileExistsError:
        # Another process created it first
        return decode_master_key(path.read_text(encoding="ascii"))
    with os.fdopen(fd, "w", encoding="ascii") as f:
        f.write(key.hex())
    logger.warning("No master key configured; generated a new one at %s", path)
    return key
