"""
Content digesting.

A Digester turns an image reference into a stable content digest of the
form "<algorithm>:<hex>". Two variants exist: the in-process engine
digester (engine.EngineDigester) and the external driver digester
(driver.DriverDigester). Both digest the exact bytes that end up in the
archive, so import can recompute and compare.
"""

import hashlib
import re
import threading
from abc import ABC, abstractmethod
from enum import Enum
from pathlib import Path
from typing import BinaryIO, TextIO

from .errors import ContentError, OperationCancelled


CHUNK_SIZE = 1024 * 1024


class Algorithm(str, Enum):
    SHA256 = "sha256"
    SHA512 = "sha512"


CANONICAL = Algorithm.SHA256

_DIGEST_FORMAT = re.compile(r"^(sha256:[0-9a-f]{64}|sha512:[0-9a-f]{128})$")


def is_valid_digest(value: str) -> bool:
    return bool(_DIGEST_FORMAT.match(value or ""))


def digest_algorithm(value: str) -> Algorithm:
    """Algorithm named by the prefix of a digest string."""
    prefix, _, _ = (value or "").partition(":")
    try:
        return Algorithm(prefix)
    except ValueError:
        raise ContentError(f"unsupported digest algorithm in {value!r}") from None


def check_cancelled(cancel: threading.Event | None) -> None:
    if cancel is not None and cancel.is_set():
        raise OperationCancelled("operation cancelled")


def compute_digest(
    reader: BinaryIO,
    algorithm: Algorithm = CANONICAL,
    sink: BinaryIO | None = None,
    cancel: threading.Event | None = None,
) -> str:
    """
    Digest everything readable from reader, copying it to sink if given.

    Raises:
        ContentError: On read/write failure or an empty stream
        OperationCancelled: If cancel is set while reading
    """
    hasher = hashlib.new(algorithm.value)
    total = 0
    try:
        while True:
            check_cancelled(cancel)
            chunk = reader.read(CHUNK_SIZE)
            if not chunk:
                break
            hasher.update(chunk)
            if sink is not None:
                sink.write(chunk)
            total += len(chunk)
    except OSError as exc:
        raise ContentError(f"reading image content failed: {exc}") from exc

    if total == 0:
        raise ContentError("image content stream was empty")
    return f"{algorithm.value}:{hasher.hexdigest()}"


def digest_file(
    path: Path,
    algorithm: Algorithm = CANONICAL,
    cancel: threading.Event | None = None,
) -> str:
    try:
        with open(path, "rb") as handle:
            return compute_digest(handle, algorithm, cancel=cancel)
    except FileNotFoundError as exc:
        raise ContentError(f"content file {path} does not exist") from exc


class Digester(ABC):
    """Produces content digests for image references."""

    algorithm: Algorithm = CANONICAL

    @abstractmethod
    def digest(self, reference: str, cancel: threading.Event | None = None) -> str:
        """Digest of the image's full content."""

    @abstractmethod
    def archive(
        self,
        reference: str,
        destination: Path,
        logs: TextIO,
        cancel: threading.Event | None = None,
    ) -> str:
        """
        Fetch the image, write its content to destination and return the
        digest of exactly the bytes written.
        """
