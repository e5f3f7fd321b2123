"""
Error codes and exception types for cnab-archive.

Every failure raised by the library is a CnabError subclass carrying a
stable ErrorCode so front ends can branch on the kind of failure (for
example, offer an insecure retry on NOT_SIGNED) without string matching.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class ErrorCode(str, Enum):
    """Stable failure codes. Values are safe to persist in audit logs."""
    INPUT_VALIDATION_FAILED = "INPUT_VALIDATION_FAILED"
    MALFORMED_BUNDLE = "MALFORMED_BUNDLE"
    INVALID_REFERENCE = "INVALID_REFERENCE"
    ARTIFACT_COLLISION = "ARTIFACT_COLLISION"
    STAGING_CONFLICT = "STAGING_CONFLICT"
    NOT_SIGNED = "NOT_SIGNED"
    SIGNATURE_INVALID = "SIGNATURE_INVALID"
    EMPTY_KEYRING = "EMPTY_KEYRING"
    KEY_NOT_FOUND = "KEY_NOT_FOUND"
    KEYRING_INVALID = "KEYRING_INVALID"
    CONTENT_FAILED = "CONTENT_FAILED"
    CANCELLED = "CANCELLED"
    DRIVER_FAILED = "DRIVER_FAILED"
    UNSUPPORTED_IMAGE_TYPE = "UNSUPPORTED_IMAGE_TYPE"
    DIGEST_MISMATCH = "DIGEST_MISMATCH"
    ARTIFACT_MISSING = "ARTIFACT_MISSING"


class CnabError(Exception):
    """Base class for all cnab-archive failures."""
    code = ErrorCode.INPUT_VALIDATION_FAILED

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        return {
            "code": self.code.value,
            "message": self.message,
            "details": self.details,
        }


class InputValidationError(CnabError):
    code = ErrorCode.INPUT_VALIDATION_FAILED


class MalformedBundleError(CnabError):
    code = ErrorCode.MALFORMED_BUNDLE


class InvalidReferenceError(CnabError):
    code = ErrorCode.INVALID_REFERENCE


class ArtifactCollisionError(CnabError):
    code = ErrorCode.ARTIFACT_COLLISION


class StagingConflictError(CnabError):
    code = ErrorCode.STAGING_CONFLICT


class NotSignedError(CnabError):
    """The data carries no signature block at all."""
    code = ErrorCode.NOT_SIGNED


class SignatureInvalidError(CnabError):
    """A signature block is present but no trusted key verifies it."""
    code = ErrorCode.SIGNATURE_INVALID


class EmptyKeyringError(CnabError):
    code = ErrorCode.EMPTY_KEYRING


class KeyNotFoundError(CnabError):
    code = ErrorCode.KEY_NOT_FOUND


class KeyringError(CnabError):
    code = ErrorCode.KEYRING_INVALID


class ContentError(CnabError):
    code = ErrorCode.CONTENT_FAILED


class OperationCancelled(CnabError):
    code = ErrorCode.CANCELLED


class DriverError(CnabError):
    """An external driver failed. Its output is kept for diagnostics."""
    code = ErrorCode.DRIVER_FAILED

    def __init__(
        self,
        message: str,
        details: dict[str, Any] | None = None,
        stdout: str = "",
        stderr: str = "",
        exit_code: int | None = None,
    ):
        super().__init__(message, details)
        self.stdout = stdout
        self.stderr = stderr
        self.exit_code = exit_code

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["details"] = {
            **self.details,
            "exit_code": self.exit_code,
            "stdout": self.stdout,
            "stderr": self.stderr,
        }
        return data


class UnsupportedImageTypeError(CnabError):
    code = ErrorCode.UNSUPPORTED_IMAGE_TYPE


class ArtifactVerificationError(CnabError):
    code = ErrorCode.DIGEST_MISMATCH


@dataclass
class VerificationIssue:
    """
    A single finding from a batch verification pass.
    """
    code: ErrorCode
    message: str
    details: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "code": self.code.value,
            "message": self.message,
            "details": self.details,
        }


@dataclass
class VerificationResult:
    """
    Result of a batch verification pass.
    """
    valid: bool
    issues: list[VerificationIssue] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "valid": self.valid,
            "issues": [i.to_dict() for i in self.issues],
        }
