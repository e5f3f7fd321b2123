"""
cnab-archive: portable, integrity-verified bundle archives.

Exports a bundle descriptor together with the container images it
references into a signed .tgz, and verifies and unpacks such archives
before installation.
"""

import logging

from .bundle import Bundle, Image, InvocationImage
from .canonical import canonical_json
from .config import Config
from .digester import Algorithm, Digester, compute_digest
from .driver import Driver, DriverDigester, DriverRegistry, DriverRequest, discover_drivers
from .engine import DockerEngine, EngineDigester, ImageContentSource
from .errors import (
    ArtifactCollisionError,
    ArtifactVerificationError,
    CnabError,
    ContentError,
    DriverError,
    EmptyKeyringError,
    ErrorCode,
    InputValidationError,
    InvalidReferenceError,
    KeyNotFoundError,
    KeyringError,
    MalformedBundleError,
    NotSignedError,
    OperationCancelled,
    SignatureInvalidError,
    StagingConflictError,
    UnsupportedImageTypeError,
    VerificationIssue,
    VerificationResult,
)
from .export import Exporter
from .imagebuilder import DockerImageBuilder, ImageBuilder
from .importer import Importer, verify_artifacts
from .keyring import Key, Keyring, load_keyring, save_keyring
from .loader import DetectingLoader, Loader, SecureLoader, get_loader
from .pull import Resolver, pull_bundle
from .reference import Reference, artifact_filename, get_reference, normalize_reference, parse_reference
from .routing import DigesterRouter
from .signature import Signer, Verifier

logging.getLogger(__name__).addHandler(logging.NullHandler())

__version__ = "0.1.0"
__all__ = [
    # Model
    "Bundle",
    "Image",
    "InvocationImage",
    "canonical_json",
    "Config",
    # References
    "Reference",
    "parse_reference",
    "normalize_reference",
    "get_reference",
    "artifact_filename",
    # Digesting
    "Algorithm",
    "Digester",
    "compute_digest",
    "DigesterRouter",
    "ImageContentSource",
    "DockerEngine",
    "EngineDigester",
    # Drivers
    "Driver",
    "DriverDigester",
    "DriverRegistry",
    "DriverRequest",
    "discover_drivers",
    # Trust
    "Key",
    "Keyring",
    "load_keyring",
    "save_keyring",
    "Signer",
    "Verifier",
    "Loader",
    "DetectingLoader",
    "SecureLoader",
    "get_loader",
    # Pipelines
    "Exporter",
    "Importer",
    "verify_artifacts",
    "pull_bundle",
    "Resolver",
    "ImageBuilder",
    "DockerImageBuilder",
    # Errors
    "ErrorCode",
    "CnabError",
    "InputValidationError",
    "MalformedBundleError",
    "InvalidReferenceError",
    "ArtifactCollisionError",
    "StagingConflictError",
    "NotSignedError",
    "SignatureInvalidError",
    "EmptyKeyringError",
    "KeyNotFoundError",
    "KeyringError",
    "ContentError",
    "OperationCancelled",
    "DriverError",
    "UnsupportedImageTypeError",
    "ArtifactVerificationError",
    "VerificationIssue",
    "VerificationResult",
]
