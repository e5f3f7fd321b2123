"""
External driver protocol.

A driver is an executable found on the driver search path whose file
name starts with the configured prefix (for example "cnab-qcow"). The
core talks to it three ways:

    driver --handles   stdout: comma-separated image-type tokens, exit 0
    driver --help      human-readable usage, exit code not interpreted
    driver             stdin: JSON request, exit code is the only
                       success signal, stdout carries the result

Request schema:

    {"action": "digest" | "archive" | ...,
     "image": "<reference>",
     "imageType": "<token>",
     "parameters": {...}}
"""

import json
import logging
import os
import re
import subprocess
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, TextIO

from .digester import CANONICAL, Algorithm, Digester, check_cancelled, digest_file, is_valid_digest
from .errors import DriverError, UnsupportedImageTypeError


logger = logging.getLogger(__name__)

_TOKEN = re.compile(r"^[a-z0-9][a-z0-9._-]*$")

# Poll interval while waiting on a driver, so cancellation is noticed.
_POLL_SECONDS = 0.2


@dataclass
class DriverRequest:
    action: str
    image: str
    image_type: str = ""
    parameters: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "action": self.action,
            "image": self.image,
            "imageType": self.image_type,
            "parameters": self.parameters,
        }


@dataclass
class DriverResult:
    stdout: str
    stderr: str


class Driver:
    """Handle on one external driver executable."""

    def __init__(self, path: str | Path, name: str | None = None, timeout: float | None = None):
        self.path = Path(path)
        self.name = name or self.path.name
        self.timeout = timeout
        self._handles: tuple[str, ...] | None = None

    def __repr__(self) -> str:
        return f"Driver({self.name!r}, {str(self.path)!r})"

    def _invoke(
        self,
        args: list[str],
        stdin: str | None = None,
        cancel: threading.Event | None = None,
    ) -> tuple[int, str, str]:
        check_cancelled(cancel)
        try:
            proc = subprocess.Popen(
                [str(self.path), *args],
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
            )
        except OSError as exc:
            raise DriverError(f"cannot execute driver {self.name}: {exc}",
                              {"driver": self.name}) from exc

        waited = 0.0
        pending = stdin or ""
        while True:
            step = _POLL_SECONDS
            if self.timeout is not None:
                step = min(step, max(self.timeout - waited, 0.001))
            try:
                stdout, stderr = proc.communicate(pending, timeout=step)
                break
            except subprocess.TimeoutExpired:
                # stdin has been delivered by the first communicate call
                pending = None
                waited += step
                if cancel is not None and cancel.is_set():
                    proc.kill()
                    proc.communicate()
                    check_cancelled(cancel)
                if self.timeout is not None and waited >= self.timeout:
                    proc.kill()
                    stdout, stderr = proc.communicate()
                    raise DriverError(
                        f"driver {self.name} timed out after {self.timeout:g}s",
                        {"driver": self.name, "args": args},
                        stdout=stdout, stderr=stderr,
                    ) from None
        return proc.returncode, stdout, stderr

    def handles(self) -> tuple[str, ...]:
        """
        Image-type tokens this driver advertises. Queried once and cached.

        Raises:
            DriverError: On non-zero exit or malformed output
        """
        if self._handles is not None:
            return self._handles

        code, stdout, stderr = self._invoke(["--handles"])
        if code != 0:
            raise DriverError(
                f"driver {self.name} --handles exited with code {code}",
                {"driver": self.name}, stdout=stdout, stderr=stderr, exit_code=code,
            )
        tokens = tuple(t.strip() for t in stdout.strip().split(",") if t.strip())
        bad = [t for t in tokens if not _TOKEN.match(t)]
        if not tokens or bad:
            raise DriverError(
                f"driver {self.name} returned malformed --handles output: {stdout.strip()!r}",
                {"driver": self.name, "invalid_tokens": bad},
                stdout=stdout, stderr=stderr, exit_code=code,
            )
        self._handles = tokens
        return tokens

    def help(self) -> str:
        """Usage text; the exit code is driver-defined and ignored."""
        _, stdout, stderr = self._invoke(["--help"])
        return stdout or stderr

    def run(self, request: DriverRequest, cancel: threading.Event | None = None) -> DriverResult:
        """
        Send a request on stdin and wait for the driver to finish.

        Raises:
            DriverError: On non-zero exit or timeout
        """
        logger.debug("driver %s: %s %s", self.name, request.action, request.image)
        code, stdout, stderr = self._invoke([], json.dumps(request.to_dict()), cancel)
        if code != 0:
            raise DriverError(
                f"driver {self.name} failed to {request.action} {request.image} (exit code {code})",
                {"driver": self.name, "action": request.action, "image": request.image},
                stdout=stdout, stderr=stderr, exit_code=code,
            )
        return DriverResult(stdout=stdout, stderr=stderr)


class DriverRegistry:
    """Routing table from image-type token to driver."""

    def __init__(self, drivers: list[Driver] | None = None):
        self.drivers = list(drivers or [])
        self.failures: list[DriverError] = []
        self._table: dict[str, Driver] | None = None

    @property
    def table(self) -> dict[str, Driver]:
        """
        Built once. A driver whose --handles fails is left out and its
        error kept in failures; the other drivers still route.
        """
        if self._table is None:
            table: dict[str, Driver] = {}
            failures: list[DriverError] = []
            for driver in self.drivers:
                try:
                    tokens = driver.handles()
                except DriverError as exc:
                    logger.warning("skipping driver %s: %s", driver.name, exc.message)
                    failures.append(exc)
                    continue
                for token in tokens:
                    owner = table.setdefault(token, driver)
                    if owner is not driver:
                        logger.warning("image type %r claimed by %s and %s; using %s",
                                       token, owner.name, driver.name, owner.name)
            logger.info("driver routing table: %s",
                        ", ".join(f"{t}->{d.name}" for t, d in table.items()) or "empty")
            self.failures = failures
            self._table = table
        return self._table

    def route(self, image_type: str) -> Driver:
        """
        Raises:
            UnsupportedImageTypeError: If no healthy driver handles
                image_type; details carry any discovery failures
        """
        try:
            return self.table[image_type]
        except KeyError:
            details = {"image_type": image_type, "handled": sorted(self.table)}
            message = f"unsupported image type {image_type!r}: no driver handles it"
            if self.failures:
                details["driver_errors"] = [exc.to_dict() for exc in self.failures]
                message += f" ({len(self.failures)} driver(s) failed to report --handles)"
            raise UnsupportedImageTypeError(message, details) from None


def discover_drivers(
    search_path: list[Path],
    prefix: str,
    timeout: float | None = None,
) -> DriverRegistry:
    """
    Collect driver executables named <prefix><name> from search_path.

    Earlier directories win when the same name appears twice.
    """
    found: dict[str, Driver] = {}
    for directory in search_path:
        try:
            entries = sorted(Path(directory).iterdir())
        except OSError:
            continue
        for entry in entries:
            if not entry.name.startswith(prefix) or entry.name == prefix or entry.name in found:
                continue
            if entry.is_file() and os.access(entry, os.X_OK):
                found[entry.name] = Driver(entry, name=entry.name[len(prefix):], timeout=timeout)
    return DriverRegistry(list(found.values()))


class DriverDigester(Digester):
    """Digester that delegates image handling to an external driver."""

    def __init__(self, driver: Driver, image_type: str, algorithm: Algorithm = CANONICAL):
        self.driver = driver
        self.image_type = image_type
        self.algorithm = algorithm

    def digest(self, reference: str, cancel: threading.Event | None = None) -> str:
        request = DriverRequest(action="digest", image=reference, image_type=self.image_type)
        result = self.driver.run(request, cancel)
        value = result.stdout.strip().splitlines()[-1].strip() if result.stdout.strip() else ""
        if not is_valid_digest(value):
            raise DriverError(
                f"driver {self.driver.name} returned a malformed digest for {reference}: {value!r}",
                {"driver": self.driver.name, "image": reference},
                stdout=result.stdout, stderr=result.stderr, exit_code=0,
            )
        return value

    def archive(
        self,
        reference: str,
        destination: Path,
        logs: TextIO,
        cancel: threading.Event | None = None,
    ) -> str:
        request = DriverRequest(
            action="archive",
            image=reference,
            image_type=self.image_type,
            parameters={"destination": str(destination)},
        )
        result = self.driver.run(request, cancel)
        logs.write(result.stdout)
        logs.write(result.stderr)
        if not destination.is_file():
            raise DriverError(
                f"driver {self.driver.name} did not write {destination.name}",
                {"driver": self.driver.name, "image": reference},
                stdout=result.stdout, stderr=result.stderr, exit_code=0,
            )
        return digest_file(destination, self.algorithm, cancel)

