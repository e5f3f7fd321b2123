"""
Bundle import: verify and unpack an exported archive.

The archive is extracted member by member after each member name has
been checked, the descriptor is loaded through the caller's loader
(which enforces signature policy), and every artifact is re-digested
and compared against the digest the descriptor records for it.
"""

import logging
import shutil
import tarfile
import threading
from pathlib import Path, PurePosixPath

from .bundle import Bundle
from .digester import check_cancelled, digest_algorithm, digest_file
from .errors import (
    ArtifactVerificationError,
    CnabError,
    ContentError,
    ErrorCode,
    InputValidationError,
    VerificationIssue,
    VerificationResult,
)
from .export import ARTIFACTS_DIR, SIGNED_DESCRIPTOR, UNSIGNED_DESCRIPTOR
from .loader import Loader
from .reference import artifact_filename


logger = logging.getLogger(__name__)


def verify_artifacts(bundle: Bundle, artifacts_dir: Path) -> VerificationResult:
    """
    Check each image's artifact file against its recorded digest.

    Collects every problem instead of stopping at the first one.
    """
    issues: list[VerificationIssue] = []
    checked: set[str] = set()

    for image in bundle.all_images():
        if image.image in checked:
            continue
        checked.add(image.image)
        path = artifacts_dir / artifact_filename(image.image)

        if not path.is_file():
            issues.append(VerificationIssue(
                code=ErrorCode.ARTIFACT_MISSING,
                message=f"Artifact for {image.image} is missing",
                details={"image": image.image, "file": path.name},
            ))
            continue

        if not image.digest:
            issues.append(VerificationIssue(
                code=ErrorCode.DIGEST_MISMATCH,
                message=f"No digest recorded for {image.image}",
                details={"image": image.image},
            ))
            continue

        try:
            actual = digest_file(path, digest_algorithm(image.digest))
        except ContentError as exc:
            issues.append(VerificationIssue(
                code=ErrorCode.DIGEST_MISMATCH,
                message=f"Cannot digest artifact for {image.image}: {exc.message}",
                details={"image": image.image, "file": path.name},
            ))
            continue

        if actual != image.digest:
            issues.append(VerificationIssue(
                code=ErrorCode.DIGEST_MISMATCH,
                message=f"Digest mismatch for {image.image}",
                details={"image": image.image, "expected": image.digest, "actual": actual},
            ))

    return VerificationResult(valid=len(issues) == 0, issues=issues)


class Importer:
    """
    Unpacks an exported archive into destination and returns its bundle.

    Args:
        source: Path to the .tgz archive
        destination: Directory to unpack into; must not exist or be empty
        loader: Loader enforcing the signature policy on the descriptor
        verify_artifacts: Re-digest artifacts against the descriptor
    """

    def __init__(
        self,
        source: str | Path,
        destination: str | Path,
        loader: Loader,
        verify_artifacts: bool = True,
    ):
        self.source = Path(source)
        self.destination = Path(destination)
        self.loader = loader
        self.verify_artifacts = verify_artifacts

    def run(self, cancel: threading.Event | None = None) -> Bundle:
        if not self.source.is_file():
            raise InputValidationError(f"archive {self.source} does not exist or is not a file",
                                       {"path": str(self.source)})
        if self.destination.exists() and any(self.destination.iterdir()):
            raise InputValidationError(f"destination {self.destination} is not empty",
                                       {"path": str(self.destination)})

        created = not self.destination.exists()
        self.destination.mkdir(parents=True, exist_ok=True)
        try:
            self._extract(cancel)
            bundle = self._load()
            artifacts_dir = self.destination / ARTIFACTS_DIR
            if self.verify_artifacts and artifacts_dir.is_dir():
                result = verify_artifacts(bundle, artifacts_dir)
                if not result.valid:
                    raise ArtifactVerificationError(
                        f"artifact verification failed for {bundle.archive_name}",
                        {"issues": [i.to_dict() for i in result.issues]},
                    )
        except BaseException:
            if created:
                shutil.rmtree(self.destination, ignore_errors=True)
            else:
                for child in self.destination.iterdir():
                    if child.is_dir():
                        shutil.rmtree(child, ignore_errors=True)
                    else:
                        child.unlink(missing_ok=True)
            raise

        logger.info("imported %s into %s", bundle.archive_name, self.destination)
        return bundle

    def _extract(self, cancel: threading.Event | None) -> None:
        try:
            with tarfile.open(self.source, "r:gz") as tar:
                for member in tar:
                    check_cancelled(cancel)
                    target = self._target(member)
                    if target is None:
                        continue
                    if member.isdir():
                        target.mkdir(parents=True, exist_ok=True)
                        continue
                    target.parent.mkdir(parents=True, exist_ok=True)
                    handle = tar.extractfile(member)
                    with handle, open(target, "wb") as out:
                        shutil.copyfileobj(handle, out)
        except (tarfile.TarError, EOFError) as exc:
            raise InputValidationError(f"{self.source} is not a valid bundle archive: {exc}",
                                       {"path": str(self.source)}) from exc

    def _target(self, member: tarfile.TarInfo) -> Path | None:
        name = PurePosixPath(member.name)
        if name.is_absolute() or ".." in name.parts:
            raise InputValidationError(f"archive member {member.name!r} escapes the destination",
                                       {"member": member.name})
        if not (member.isfile() or member.isdir()):
            raise InputValidationError(f"archive member {member.name!r} is not a regular file or directory",
                                       {"member": member.name})
        parts = [p for p in name.parts if p != "."]
        if not parts:
            return None
        return self.destination.joinpath(*parts)

    def _load(self) -> Bundle:
        for name in (SIGNED_DESCRIPTOR, UNSIGNED_DESCRIPTOR):
            path = self.destination / name
            if path.is_file():
                try:
                    return self.loader.load(path)
                except CnabError:
                    logger.error("cannot load %s from %s", name, self.source)
                    raise
        raise InputValidationError(f"archive {self.source} contains no bundle descriptor",
                                   {"path": str(self.source)})

