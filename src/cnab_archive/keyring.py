"""
Signing identities and keyrings.

A keyring is an ordered list of named keys loaded from a JSON file:

    {"keys": [{"name": "...", "algorithm": "ed25519",
               "public_key": "<PEM or base64>", "private_key": "<PEM>"}]}

Public keyrings omit private_key. File order is keyring order, and the
first key is the default signing identity.
"""

import base64
import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterator

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec, ed25519, padding, rsa

from .errors import EmptyKeyringError, KeyNotFoundError, KeyringError


logger = logging.getLogger(__name__)

ALGORITHMS = ("ed25519", "rsa-sha256", "ecdsa-p256")


@dataclass
class Key:
    """A named signing identity. private_key is None for verify-only keys."""
    name: str
    algorithm: str
    public_key: Any
    private_key: Any = None

    @classmethod
    def generate(cls, name: str, algorithm: str = "ed25519") -> "Key":
        if algorithm == "ed25519":
            private = ed25519.Ed25519PrivateKey.generate()
        elif algorithm == "rsa-sha256":
            private = rsa.generate_private_key(public_exponent=65537, key_size=2048)
        elif algorithm == "ecdsa-p256":
            private = ec.generate_private_key(ec.SECP256R1())
        else:
            raise KeyringError(f"unsupported key algorithm: {algorithm}")
        return cls(name=name, algorithm=algorithm,
                   public_key=private.public_key(), private_key=private)

    @property
    def can_sign(self) -> bool:
        return self.private_key is not None

    def public(self) -> "Key":
        """A verify-only copy of this key."""
        return Key(name=self.name, algorithm=self.algorithm, public_key=self.public_key)

    def sign(self, content: bytes) -> bytes:
        if self.private_key is None:
            raise KeyringError(f"key {self.name!r} has no private part and cannot sign")
        if self.algorithm == "ed25519":
            return self.private_key.sign(content)
        if self.algorithm == "rsa-sha256":
            return self.private_key.sign(content, padding.PKCS1v15(), hashes.SHA256())
        return self.private_key.sign(content, ec.ECDSA(hashes.SHA256()))

    def verify(self, signature: bytes, content: bytes) -> bool:
        """True when signature over content was made by this key."""
        try:
            if self.algorithm == "ed25519":
                self.public_key.verify(signature, content)
            elif self.algorithm == "rsa-sha256":
                self.public_key.verify(signature, content, padding.PKCS1v15(), hashes.SHA256())
            else:
                self.public_key.verify(signature, content, ec.ECDSA(hashes.SHA256()))
        except (InvalidSignature, ValueError):
            return False
        return True

    def to_dict(self, include_private: bool = False) -> dict[str, Any]:
        data = {
            "name": self.name,
            "algorithm": self.algorithm,
            "public_key": self.public_key.public_bytes(
                encoding=serialization.Encoding.PEM,
                format=serialization.PublicFormat.SubjectPublicKeyInfo,
            ).decode("utf-8"),
        }
        if include_private and self.private_key is not None:
            data["private_key"] = self.private_key.private_bytes(
                encoding=serialization.Encoding.PEM,
                format=serialization.PrivateFormat.PKCS8,
                encryption_algorithm=serialization.NoEncryption(),
            ).decode("utf-8")
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Key":
        if not isinstance(data, dict):
            raise KeyringError("keyring entries must be objects")
        name = data.get("name")
        if not isinstance(name, str) or not name:
            raise KeyringError("keyring entry is missing a name")
        algorithm = data.get("algorithm", "ed25519")
        if algorithm not in ALGORITHMS:
            raise KeyringError(f"key {name!r}: unsupported algorithm {algorithm!r}")

        private = None
        if data.get("private_key"):
            private = _load_private_key(data["private_key"], algorithm, name)
            public = private.public_key()
        elif data.get("public_key"):
            public = _load_public_key(data["public_key"], algorithm, name)
        else:
            raise KeyringError(f"key {name!r} has neither public_key nor private_key")
        return cls(name=name, algorithm=algorithm, public_key=public, private_key=private)


class Keyring:
    """Ordered collection of signing identities."""

    def __init__(self, keys: list[Key] | None = None):
        self._keys = list(keys or [])

    def __len__(self) -> int:
        return len(self._keys)

    def __iter__(self) -> Iterator[Key]:
        return iter(self._keys)

    def keys(self) -> list[Key]:
        return list(self._keys)

    def key(self, name: str) -> Key:
        for key in self._keys:
            if key.name == name:
                return key
        raise KeyNotFoundError(f"key {name!r} not found in keyring", {"name": name})

    def signing_key(self, name: str | None = None) -> Key:
        """
        Select the signing identity: the named key, else the first key.

        Raises:
            EmptyKeyringError: If the keyring holds no keys
            KeyNotFoundError: If name is given and absent
        """
        if not self._keys:
            raise EmptyKeyringError("no signing keys are present in the keyring")
        key = self.key(name) if name else self._keys[0]
        if not key.can_sign:
            raise KeyringError(f"key {key.name!r} has no private part and cannot sign")
        return key

    def to_dict(self, include_private: bool = False) -> dict[str, Any]:
        return {"keys": [k.to_dict(include_private) for k in self._keys]}


def load_keyring(path: str | Path) -> Keyring:
    """
    Load a keyring file.

    Raises:
        KeyringError: If the file is missing or not a valid keyring
    """
    path = Path(path)
    try:
        raw = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        raise KeyringError(f"keyring {path} does not exist", {"path": str(path)}) from None
    except OSError as exc:
        raise KeyringError(f"cannot read keyring {path}: {exc}", {"path": str(path)}) from exc

    try:
        data = json.loads(raw) if raw.strip() else {"keys": []}
    except json.JSONDecodeError as exc:
        raise KeyringError(f"keyring {path} is not valid JSON: {exc}", {"path": str(path)}) from exc
    if not isinstance(data, dict) or not isinstance(data.get("keys", []), list):
        raise KeyringError(f"keyring {path} must contain a 'keys' array", {"path": str(path)})

    keyring = Keyring([Key.from_dict(entry) for entry in data.get("keys", [])])
    logger.debug("loaded %d key(s) from %s", len(keyring), path)
    return keyring


def save_keyring(keyring: Keyring, path: str | Path, include_private: bool = False) -> None:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(keyring.to_dict(include_private), indent=2), encoding="utf-8")
    if include_private:
        path.chmod(0o600)


def _load_private_key(key_text: str, algorithm: str, name: str):
    try:
        key_obj = serialization.load_pem_private_key(key_text.strip().encode("utf-8"), password=None)
    except (ValueError, TypeError) as exc:
        raise KeyringError(f"key {name!r}: invalid PEM private key ({exc})") from exc
    _check_type(key_obj.public_key(), algorithm, name)
    return key_obj


def _load_public_key(key_value: str, algorithm: str, name: str):
    """Load a public key from PEM text or base64/DER bytes."""
    key_text = (key_value or "").strip()
    if "BEGIN" in key_text:
        try:
            key_obj = serialization.load_pem_public_key(key_text.encode("utf-8"))
        except ValueError as exc:
            raise KeyringError(f"key {name!r}: invalid PEM public key ({exc})") from exc
    else:
        try:
            decoded = base64.b64decode(key_text, validate=True)
        except ValueError:
            raise KeyringError(f"key {name!r}: public key must be PEM or base64") from None

        # Ed25519 commonly uses raw 32-byte public key encoding.
        try:
            if algorithm == "ed25519" and len(decoded) == 32:
                key_obj = ed25519.Ed25519PublicKey.from_public_bytes(decoded)
            else:
                key_obj = serialization.load_der_public_key(decoded)
        except ValueError as exc:
            raise KeyringError(f"key {name!r}: invalid public key ({exc})") from exc

    _check_type(key_obj, algorithm, name)
    return key_obj


def _check_type(public_key, algorithm: str, name: str) -> None:
    if algorithm == "ed25519" and not isinstance(public_key, ed25519.Ed25519PublicKey):
        raise KeyringError(f"key {name!r}: expected Ed25519 key")
    if algorithm == "rsa-sha256" and not isinstance(public_key, rsa.RSAPublicKey):
        raise KeyringError(f"key {name!r}: expected RSA key")
    if algorithm == "ecdsa-p256":
        if not isinstance(public_key, ec.EllipticCurvePublicKey) or not isinstance(public_key.curve, ec.SECP256R1):
            raise KeyringError(f"key {name!r}: expected ECDSA P-256 key")
