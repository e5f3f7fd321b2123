"""
Runtime configuration.

Everything that would otherwise be process-wide state (home directory,
trust store paths, driver search path) lives on a Config instance that
is passed to the objects that need it.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping

from .digester import Algorithm
from .errors import InputValidationError


DEFAULT_HOME = "~/.cnab-archive"
DEFAULT_DRIVER_PREFIX = "cnab-"
DEFAULT_DRIVER_TIMEOUT = 300.0
DEFAULT_NATIVE_IMAGE_TYPES = ("docker", "oci")


@dataclass
class Config:
    home: Path
    public_keyring: Path
    secret_keyring: Path
    logs_dir: Path
    work_dir: Path = field(default_factory=Path.cwd)
    driver_path: list[Path] = field(default_factory=list)
    driver_prefix: str = DEFAULT_DRIVER_PREFIX
    driver_timeout: float | None = DEFAULT_DRIVER_TIMEOUT
    digest_algorithm: Algorithm = Algorithm.SHA256
    native_image_types: tuple[str, ...] = DEFAULT_NATIVE_IMAGE_TYPES
    docker_binary: str = "docker"

    @classmethod
    def for_home(cls, home: str | Path, **overrides) -> "Config":
        """Config with all trust-store and log paths laid out under home."""
        home = Path(home).expanduser()
        values = {
            "home": home,
            "public_keyring": home / "public.ring",
            "secret_keyring": home / "secret.ring",
            "logs_dir": home / "logs",
        }
        values.update(overrides)
        return cls(**values)

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "Config":
        """
        Build a Config from environment variables.

        CNAB_HOME, CNAB_DRIVER_PATH, CNAB_DRIVER_TIMEOUT,
        CNAB_DIGEST_ALGORITHM and CNAB_DOCKER are honored; PATH is the
        driver search path when CNAB_DRIVER_PATH is unset.
        """
        env = os.environ if environ is None else environ

        search = env.get("CNAB_DRIVER_PATH", env.get("PATH", ""))
        overrides = {
            "driver_path": [Path(p) for p in search.split(os.pathsep) if p],
        }

        timeout = env.get("CNAB_DRIVER_TIMEOUT")
        if timeout:
            try:
                value = float(timeout)
            except ValueError:
                raise InputValidationError(
                    f"CNAB_DRIVER_TIMEOUT must be a number, got {timeout!r}"
                ) from None
            if value <= 0:
                raise InputValidationError("CNAB_DRIVER_TIMEOUT must be positive")
            overrides["driver_timeout"] = value

        algorithm = env.get("CNAB_DIGEST_ALGORITHM")
        if algorithm:
            try:
                overrides["digest_algorithm"] = Algorithm(algorithm.lower())
            except ValueError:
                supported = ", ".join(a.value for a in Algorithm)
                raise InputValidationError(
                    f"unsupported digest algorithm {algorithm!r}. Supported: {supported}"
                ) from None

        if env.get("CNAB_DOCKER"):
            overrides["docker_binary"] = env["CNAB_DOCKER"]

        return cls.for_home(env.get("CNAB_HOME") or DEFAULT_HOME, **overrides)
