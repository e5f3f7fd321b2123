"""Shared fixtures for cnab-archive tests."""

import contextlib
import io
import json
import stat
import sys
import textwrap
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from cnab_archive import Config, ContentError, Key, Keyring, Signer, save_keyring
from cnab_archive.bundle import Bundle


class FakeEngine:
    """In-memory ImageContentSource. Tracks open save streams."""

    def __init__(self, images: dict[str, bytes] | None = None):
        self.images = dict(images or {})
        self.pulled: list[str] = []
        self.saved: list[str] = []
        self.open_streams = 0
        self.broken_reads: set[str] = set()

    def pull(self, reference, progress, cancel=None):
        if reference not in self.images:
            raise ContentError(f"pull access denied for {reference}")
        self.pulled.append(reference)
        progress.write(f"Pulling {reference}\nStatus: Downloaded newer image\n")

    @contextlib.contextmanager
    def save(self, reference, cancel=None):
        if reference not in self.images:
            raise ContentError(f"no such image: {reference}")
        self.saved.append(reference)
        self.open_streams += 1
        stream = _BrokenStream() if reference in self.broken_reads else io.BytesIO(self.images[reference])
        try:
            yield stream
        finally:
            self.open_streams -= 1
            stream.close()


class _BrokenStream(io.RawIOBase):
    def read(self, size=-1):
        raise OSError("connection reset by peer")


@pytest.fixture
def engine():
    return FakeEngine({
        "postgres:12": b"postgres-12-layers" * 100,
        "nginx:1.25": b"nginx-layers" * 50,
        "example.com/app/installer:v1": b"installer-layers" * 10,
    })


@pytest.fixture
def signing_key():
    return Key.generate("alice")


@pytest.fixture
def config(tmp_path, signing_key):
    cfg = Config.for_home(tmp_path / "home", work_dir=tmp_path / "work", driver_path=[])
    save_keyring(Keyring([signing_key]), cfg.secret_keyring, include_private=True)
    save_keyring(Keyring([signing_key.public()]), cfg.public_keyring)
    return cfg


@pytest.fixture
def app_bundle():
    return Bundle.from_dict({
        "name": "app",
        "version": "1.0.0",
        "description": "demo application",
        "images": {"db": {"image": "postgres:12", "imageType": "docker"}},
        "invocationImages": [{"image": "example.com/app/installer:v1", "imageType": "docker"}],
    })


def write_signed(path: Path, bundle: Bundle, key: Key) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(Signer(key).clearsign(bundle))
    return path


def write_plain(path: Path, bundle: Bundle) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(bundle.to_dict(), indent=2), encoding="utf-8")
    return path


def write_executable(path: Path, body: str) -> Path:
    """Write a Python script that runs with the current interpreter."""
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(f"#!{sys.executable}\n" + textwrap.dedent(body), encoding="utf-8")
    path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return path


def make_driver(directory: Path, name: str, handles: str, exit_code: int = 0) -> Path:
    """
    A driver that advertises handles, answers "digest" with a fixed
    digest and writes its request into the destination on "archive".
    """
    return write_executable(directory / name, f"""
        import hashlib, json, sys
        if sys.argv[1:] == ["--handles"]:
            print({handles!r})
            sys.exit(0)
        if sys.argv[1:] == ["--help"]:
            print("usage: {name} [--handles|--help]")
            sys.exit(2)
        request = json.load(sys.stdin)
        if {exit_code} != 0:
            sys.stderr.write("driver exploded on " + request["image"])
            sys.exit({exit_code})
        if request["action"] == "digest":
            print("sha256:" + hashlib.sha256(request["image"].encode()).hexdigest())
        elif request["action"] == "archive":
            with open(request["parameters"]["destination"], "w") as out:
                json.dump(request, out, sort_keys=True)
            print("archived " + request["image"])
        else:
            sys.exit(3)
    """)
