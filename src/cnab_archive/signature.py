"""
Clear-signed bundle envelopes.

The envelope embeds the canonical descriptor and its signature in one
text payload:

    -----BEGIN CNAB SIGNED MESSAGE-----
    Signer: <key name>
    Algorithm: <algorithm>

    <canonical JSON>
    -----BEGIN CNAB SIGNATURE-----
    <base64 signature over the canonical JSON bytes>
    -----END CNAB SIGNATURE-----

Canonical JSON never contains a raw newline, so the payload is always a
single line.
"""

import base64
import binascii
import logging
from dataclasses import dataclass

from .bundle import Bundle
from .errors import NotSignedError, SignatureInvalidError
from .keyring import Key, Keyring


logger = logging.getLogger(__name__)

BEGIN_MESSAGE = "-----BEGIN CNAB SIGNED MESSAGE-----"
BEGIN_SIGNATURE = "-----BEGIN CNAB SIGNATURE-----"
END_SIGNATURE = "-----END CNAB SIGNATURE-----"

NO_SIGNATURE_BLOCK = "no signature block in data"


@dataclass
class Envelope:
    """A parsed, not yet verified, clear-signed payload."""
    headers: dict[str, str]
    payload: bytes
    signature: bytes

    @property
    def signer(self) -> str:
        return self.headers.get("Signer", "")


def is_clearsigned(data: bytes) -> bool:
    return data.lstrip().startswith(BEGIN_MESSAGE.encode("ascii"))


def decode(data: bytes) -> Envelope:
    """
    Split a clear-signed envelope into headers, payload and signature.

    Raises:
        NotSignedError: If the data carries no signature block
        SignatureInvalidError: If a signature block is present but malformed
    """
    try:
        text = data.decode("utf-8")
    except UnicodeDecodeError:
        raise NotSignedError(NO_SIGNATURE_BLOCK) from None

    # only "\n" separates lines; the payload may hold U+2028 and friends
    lines = text.replace("\r\n", "\n").strip().split("\n")
    if not lines or lines[0].strip() != BEGIN_MESSAGE or BEGIN_SIGNATURE not in lines:
        raise NotSignedError(NO_SIGNATURE_BLOCK)

    sig_start = lines.index(BEGIN_SIGNATURE)
    head_and_body = lines[1:sig_start]
    try:
        blank = head_and_body.index("")
    except ValueError:
        raise SignatureInvalidError("clear-signed envelope has no header terminator") from None

    headers = {}
    for line in head_and_body[:blank]:
        key, sep, value = line.partition(":")
        if not sep:
            raise SignatureInvalidError(f"malformed envelope header: {line!r}")
        headers[key.strip()] = value.strip()

    body = head_and_body[blank + 1:]
    if len(body) != 1 or not body[0]:
        raise SignatureInvalidError("clear-signed payload must be a single non-empty line")

    tail = lines[sig_start + 1:]
    if END_SIGNATURE not in tail:
        raise SignatureInvalidError("signature block is not terminated")
    encoded = "".join(tail[:tail.index(END_SIGNATURE)])
    try:
        signature = base64.b64decode(encoded, validate=True)
    except binascii.Error:
        raise SignatureInvalidError("signature is not valid base64") from None
    if not signature:
        raise SignatureInvalidError("signature block is empty")

    return Envelope(headers=headers, payload=body[0].encode("utf-8"), signature=signature)


def encode(key: Key, payload: bytes, signature: bytes) -> bytes:
    lines = [
        BEGIN_MESSAGE,
        f"Signer: {key.name}",
        f"Algorithm: {key.algorithm}",
        "",
        payload.decode("utf-8"),
        BEGIN_SIGNATURE,
        base64.b64encode(signature).decode("ascii"),
        END_SIGNATURE,
    ]
    return ("\n".join(lines) + "\n").encode("utf-8")


class Signer:
    """Clear-signs bundles with one key."""

    def __init__(self, key: Key):
        self.key = key

    @classmethod
    def from_keyring(cls, keyring: Keyring, name: str | None = None) -> "Signer":
        """
        Signer for the named key, or the first key in keyring order.

        Raises:
            EmptyKeyringError: If the keyring holds no keys
            KeyNotFoundError: If name is given and absent
        """
        return cls(keyring.signing_key(name))

    def clearsign(self, bundle: Bundle) -> bytes:
        payload = bundle.to_canonical()
        signature = self.key.sign(payload)
        logger.debug("signed bundle %s with key %s", bundle.archive_name, self.key.name)
        return encode(self.key, payload, signature)


class Verifier:
    """Checks clear-signed payloads against every key in a keyring."""

    def __init__(self, keyring: Keyring):
        self.keyring = keyring

    def verify(self, data: bytes) -> tuple[bytes, Key]:
        """
        Return the verified payload and the key that signed it.

        Raises:
            NotSignedError: If the data carries no signature block
            SignatureInvalidError: If no key in the keyring verifies it
        """
        envelope = decode(data)
        for key in self.keyring:
            logger.debug("trying key %s", key.name)
            if key.verify(envelope.signature, envelope.payload):
                return envelope.payload, key
        raise SignatureInvalidError(
            "signature does not match any key in the keyring",
            {"signer": envelope.signer, "keys": [k.name for k in self.keyring]},
        )
