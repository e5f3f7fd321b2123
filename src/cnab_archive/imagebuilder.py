"""
Image builders.

An ImageBuilder materializes a buildable component into a concrete image
reference ahead of export. Builders share the digesting capability with
the export path, so a freshly built image can be digested the same way.
"""

import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import TextIO

from .digester import Digester
from .engine import DockerEngine, EngineDigester
from .errors import InputValidationError
from .reference import parse_reference


class ImageBuilder(ABC):

    @property
    @abstractmethod
    def name(self) -> str:
        ...

    @property
    @abstractmethod
    def type(self) -> str:
        ...

    @property
    @abstractmethod
    def uri(self) -> str:
        ...

    @abstractmethod
    def digest(self) -> str:
        ...

    @abstractmethod
    def prepare_build(self, context_path: str | Path, dockerfile: str | Path, tag: str) -> None:
        ...

    @abstractmethod
    def build(self, log_sink: TextIO, cancel: threading.Event | None = None) -> str:
        """Build the image and return its reference."""


class DockerImageBuilder(ImageBuilder):
    """Builds images with the docker engine from a context directory."""

    def __init__(self, name: str, engine: DockerEngine, digester: Digester | None = None):
        self._name = name
        self.engine = engine
        self.digester = digester or EngineDigester(engine, pull=False)
        self.context_path: Path | None = None
        self.dockerfile: Path | None = None
        self.tag = ""

    @property
    def name(self) -> str:
        return self._name

    @property
    def type(self) -> str:
        return "docker"

    @property
    def uri(self) -> str:
        return self.tag

    def digest(self) -> str:
        if not self.tag:
            raise InputValidationError(f"image {self.name} has not been prepared")
        return self.digester.digest(self.tag)

    def prepare_build(self, context_path: str | Path, dockerfile: str | Path, tag: str) -> None:
        context_path = Path(context_path)
        dockerfile = Path(dockerfile)
        if not dockerfile.is_absolute():
            dockerfile = context_path / dockerfile
        if not context_path.is_dir():
            raise InputValidationError(f"build context {context_path} is not a directory")
        if not dockerfile.is_file():
            raise InputValidationError(f"dockerfile {dockerfile} does not exist")
        parse_reference(tag)
        self.context_path = context_path
        self.dockerfile = dockerfile
        self.tag = tag

    def build(self, log_sink: TextIO, cancel: threading.Event | None = None) -> str:
        if self.context_path is None or self.dockerfile is None:
            raise InputValidationError(f"image {self.name} has not been prepared")
        self.engine.build(self.context_path, self.dockerfile, self.tag, log_sink, cancel)
        return self.tag
