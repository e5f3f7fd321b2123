"""
Container engine access and the in-process engine digester.

DockerEngine drives the docker CLI as a subprocess. Content streams are
handed out through context managers so the pipe is closed and the child
reaped on every exit path; a leaked stream per image would exhaust file
descriptors under bulk export.
"""

import contextlib
import logging
import subprocess
import tempfile
import threading
from pathlib import Path
from typing import BinaryIO, ContextManager, Iterator, Protocol, TextIO

from .digester import CANONICAL, Algorithm, Digester, check_cancelled, compute_digest
from .errors import ContentError


logger = logging.getLogger(__name__)


class ImageContentSource(Protocol):
    """What the core needs from a container engine."""

    def pull(self, reference: str, progress: TextIO, cancel: threading.Event | None = None) -> None:
        ...

    def save(self, reference: str, cancel: threading.Event | None = None) -> ContextManager[BinaryIO]:
        ...


class _CancellableReader:
    """Wraps a pipe so each read observes the cancel event."""

    def __init__(self, raw: BinaryIO, cancel: threading.Event | None):
        self._raw = raw
        self._cancel = cancel

    def read(self, size: int = -1) -> bytes:
        check_cancelled(self._cancel)
        return self._raw.read(size)

    def close(self) -> None:
        self._raw.close()


class DockerEngine:
    """ImageContentSource backed by the docker CLI."""

    def __init__(self, binary: str = "docker"):
        self.binary = binary

    @contextlib.contextmanager
    def _process(self, args: list[str]) -> Iterator[subprocess.Popen]:
        # stderr goes to a temp file so a chatty child cannot block on a full pipe
        with tempfile.TemporaryFile() as errfile:
            try:
                proc = subprocess.Popen(
                    [self.binary, *args],
                    stdin=subprocess.DEVNULL,
                    stdout=subprocess.PIPE,
                    stderr=errfile,
                )
            except OSError as exc:
                raise ContentError(f"cannot run {self.binary}: {exc}") from exc

            completed = False
            try:
                yield proc
                completed = True
            finally:
                proc.stdout.close()
                if not completed:
                    proc.kill()
                returncode = proc.wait()

            if returncode != 0:
                errfile.seek(0)
                stderr = errfile.read().decode("utf-8", errors="replace").strip()
                raise ContentError(
                    f"{self.binary} {args[0]} {args[-1]} failed with exit code {returncode}: {stderr}",
                    {"exit_code": returncode, "stderr": stderr},
                )

    def pull(self, reference: str, progress: TextIO, cancel: threading.Event | None = None) -> None:
        logger.info("pulling %s", reference)
        with self._process(["pull", reference]) as proc:
            for line in iter(proc.stdout.readline, b""):
                check_cancelled(cancel)
                progress.write(line.decode("utf-8", errors="replace"))

    @contextlib.contextmanager
    def save(self, reference: str, cancel: threading.Event | None = None) -> Iterator[BinaryIO]:
        with self._process(["save", reference]) as proc:
            yield _CancellableReader(proc.stdout, cancel)

    def build(
        self,
        context_path: Path,
        dockerfile: Path,
        tag: str,
        progress: TextIO,
        cancel: threading.Event | None = None,
    ) -> None:
        logger.info("building %s from %s", tag, context_path)
        args = ["build", "-f", str(dockerfile), "-t", tag, str(context_path)]
        with self._process(args) as proc:
            for line in iter(proc.stdout.readline, b""):
                check_cancelled(cancel)
                progress.write(line.decode("utf-8", errors="replace"))


class EngineDigester(Digester):
    """Digests images by saving them through the container engine."""

    def __init__(self, engine: ImageContentSource, algorithm: Algorithm = CANONICAL, pull: bool = True):
        self.engine = engine
        self.algorithm = algorithm
        self.pull = pull

    def digest(self, reference: str, cancel: threading.Event | None = None) -> str:
        with self.engine.save(reference, cancel) as stream:
            return compute_digest(stream, self.algorithm, cancel=cancel)

    def archive(
        self,
        reference: str,
        destination: Path,
        logs: TextIO,
        cancel: threading.Event | None = None,
    ) -> str:
        if self.pull:
            try:
                self.engine.pull(reference, logs, cancel)
            except ContentError as exc:
                raise ContentError(f"error pulling image {reference}: {exc.message}", exc.details) from exc

        try:
            with self.engine.save(reference, cancel) as stream, open(destination, "wb") as out:
                digest = compute_digest(stream, self.algorithm, sink=out, cancel=cancel)
        except ContentError as exc:
            raise ContentError(f"error saving image {reference}: {exc.message}", exc.details) from exc
        except OSError as exc:
            raise ContentError(f"cannot write {destination}: {exc}") from exc

        logger.info("saved %s to %s (%s)", reference, destination.name, digest)
        return digest
