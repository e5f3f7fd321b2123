"""
Bundle export.

Packages a bundle descriptor, and in thick mode every image it
references, into a gzip-compressed tar archive:

    ./bundle.cnab            clear-signed descriptor (bundle.json if unsigned)
    ./artifacts/<name>.tar   one per distinct image reference (thick only)

In thick mode the descriptor is rewritten with the digest of each
artifact and signed again before archiving.
"""

import contextlib
import logging
import os
import shutil
import tarfile
import threading
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Iterator, TextIO

from .bundle import Bundle
from .config import Config
from .digester import Digester, check_cancelled
from .errors import ArtifactCollisionError, InputValidationError, StagingConflictError
from .keyring import load_keyring
from .loader import Loader
from .reference import artifact_filename
from .routing import DigesterRouter
from .signature import Signer


logger = logging.getLogger(__name__)

SIGNED_DESCRIPTOR = "bundle.cnab"
UNSIGNED_DESCRIPTOR = "bundle.json"
ARTIFACTS_DIR = "artifacts"


@dataclass
class _Artifact:
    reference: str
    filename: str
    digester: Digester


class Exporter:
    """
    Exports one bundle file to one archive.

    Args:
        source: Path to the bundle descriptor
        destination: Archive path; "<name>-<version>.tgz" in work_dir if empty
        loader: Loader enforcing the signature policy on the source
        config: Runtime configuration (keyrings, logs, work dir)
        router: Picks a digester per image; built from config if omitted
        thin: Archive only the descriptor, no image content
        unsigned: Write a plain bundle.json instead of a signed bundle.cnab
        signer: Name of the signing key; first key in the keyring if empty
    """

    def __init__(
        self,
        source: str | Path,
        destination: str | Path | None,
        loader: Loader,
        config: Config,
        router: DigesterRouter | None = None,
        thin: bool = False,
        unsigned: bool = False,
        signer: str | None = None,
    ):
        self.source = Path(source)
        self.destination = Path(destination) if destination else None
        self.loader = loader
        self.config = config
        self._router = router
        self.thin = thin
        self.unsigned = unsigned
        self.signer = signer

    @property
    def router(self) -> DigesterRouter:
        if self._router is None:
            self._router = DigesterRouter.from_config(self.config)
        return self._router

    @property
    def descriptor_name(self) -> str:
        return UNSIGNED_DESCRIPTOR if self.unsigned else SIGNED_DESCRIPTOR

    def export(self, cancel: threading.Event | None = None) -> Path:
        """
        Run the export and return the archive path.

        Nothing is left behind on failure: the staging directory and any
        partially written archive are removed.
        """
        if not self.source.exists():
            raise InputValidationError(f"bundle manifest {self.source} does not exist",
                                       {"path": str(self.source)})
        if self.source.is_dir():
            raise InputValidationError(f"bundle manifest {self.source} is a directory, should be a file",
                                       {"path": str(self.source)})

        bundle = self.loader.load(self.source)
        bundle.validate()

        signer = None
        plan: list[_Artifact] = []
        if not self.thin:
            if not self.unsigned:
                signer = Signer.from_keyring(load_keyring(self.config.secret_keyring), self.signer)
            plan = self._plan_artifacts(bundle)

        name = bundle.archive_name
        dest = self.destination or self.config.work_dir / f"{name}.tgz"
        staging = self.config.work_dir / f"{name}-export"
        self.config.work_dir.mkdir(parents=True, exist_ok=True)
        try:
            staging.mkdir()
        except FileExistsError:
            raise StagingConflictError(
                f"staging directory {staging} already exists; is another export of {name} running?",
                {"path": str(staging)},
            ) from None

        logger.info("exporting %s (%s) to %s", name, "thin" if self.thin else "thick", dest)
        try:
            descriptor = staging / self.descriptor_name
            shutil.copyfile(self.source, descriptor)

            if not self.thin:
                with self._open_log() as logs:
                    self._prepare_artifacts(bundle, plan, staging, logs, cancel)
                bundle.require_digests()
                if signer is not None:
                    descriptor.write_bytes(signer.clearsign(bundle))
                else:
                    descriptor.write_bytes(bundle.to_canonical() + b"\n")

            check_cancelled(cancel)
            _write_archive(staging, dest)
        finally:
            shutil.rmtree(staging, ignore_errors=True)

        logger.info("exported %s to %s", name, dest)
        return dest

    def _plan_artifacts(self, bundle: Bundle) -> list[_Artifact]:
        """
        Resolve artifact names and digesters before anything is fetched.

        Raises:
            ArtifactCollisionError: If two references map to one file name
            UnsupportedImageTypeError: If no digester handles an image type
        """
        plan: list[_Artifact] = []
        by_name: dict[str, str] = {}
        for image in bundle.all_images():
            filename = artifact_filename(image.image)
            owner = by_name.setdefault(filename, image.image)
            if owner != image.image:
                raise ArtifactCollisionError(
                    f"images {owner} and {image.image} would both be archived as {filename}",
                    {"filename": filename, "references": [owner, image.image]},
                )
            if any(a.reference == image.image for a in plan):
                continue
            plan.append(_Artifact(image.image, filename, self.router.for_image(image)))
        return plan

    def _prepare_artifacts(
        self,
        bundle: Bundle,
        plan: list[_Artifact],
        staging: Path,
        logs: TextIO,
        cancel: threading.Event | None,
    ) -> None:
        """Fetch every image into artifacts/ and record its digest on the bundle."""
        artifacts_dir = staging / ARTIFACTS_DIR
        artifacts_dir.mkdir()

        digests: dict[str, str] = {}
        for artifact in plan:
            check_cancelled(cancel)
            digests[artifact.reference] = artifact.digester.archive(
                artifact.reference, artifacts_dir / artifact.filename, logs, cancel
            )

        for image in bundle.all_images():
            image.digest = digests[image.image]

    @contextlib.contextmanager
    def _open_log(self) -> Iterator[TextIO]:
        stamp = datetime.now().strftime("%Y%m%d%H%M%S")
        path = self.config.logs_dir / f"export-{stamp}-{os.getpid()}"
        try:
            self.config.logs_dir.mkdir(parents=True, exist_ok=True)
            handle = open(path, "a", encoding="utf-8")
        except OSError as exc:
            # the log is advisory; export proceeds without it
            logger.warning("cannot create export log %s: %s", path, exc)
            handle = open(os.devnull, "w", encoding="utf-8")
        with handle:
            yield handle


def _write_archive(staging: Path, dest: Path) -> None:
    dest.parent.mkdir(parents=True, exist_ok=True)
    partial = dest.with_name(dest.name + ".partial")
    try:
        with tarfile.open(partial, "w:gz") as tar:
            tar.add(staging, arcname=".")
        os.replace(partial, dest)
    except BaseException:
        partial.unlink(missing_ok=True)
        raise
