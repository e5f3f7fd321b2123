"""
Bundle loaders.

SecureLoader refuses anything not signed by a trusted key.
DetectingLoader accepts plain JSON or clear-signed descriptors and never
checks signatures. Which one a caller gets is decided by get_loader from
an explicit insecure flag.
"""

import logging
from abc import ABC, abstractmethod
from pathlib import Path

from .bundle import Bundle
from .config import Config
from .errors import InputValidationError
from .keyring import Keyring, load_keyring
from .signature import Verifier, decode, is_clearsigned


logger = logging.getLogger(__name__)


class Loader(ABC):

    def load(self, path: str | Path) -> Bundle:
        path = Path(path)
        try:
            data = path.read_bytes()
        except IsADirectoryError:
            raise InputValidationError(f"bundle {path} is a directory, should be a file") from None
        except OSError as exc:
            raise InputValidationError(f"cannot read bundle {path}: {exc}", {"path": str(path)}) from exc
        return self.load_bytes(data)

    @abstractmethod
    def load_bytes(self, data: bytes) -> Bundle:
        """Parse (and, where applicable, verify) descriptor bytes."""


class DetectingLoader(Loader):
    """Loads plain or clear-signed descriptors without verification."""

    def load_bytes(self, data: bytes) -> Bundle:
        if is_clearsigned(data):
            return Bundle.from_json(decode(data).payload)
        return Bundle.from_json(data)


class SecureLoader(Loader):
    """Loads only descriptors signed by a key in the keyring."""

    def __init__(self, keyring: Keyring):
        self.verifier = Verifier(keyring)

    def load_bytes(self, data: bytes) -> Bundle:
        payload, key = self.verifier.verify(data)
        logger.info("bundle signature verified with key %s", key.name)
        return Bundle.from_json(payload)


def get_loader(config: Config, insecure: bool) -> Loader:
    if insecure:
        return DetectingLoader()
    return SecureLoader(load_keyring(config.public_keyring))
