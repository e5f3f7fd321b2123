"""Pulling descriptors through a resolver, and configuration."""

import json
import os
from pathlib import Path

import pytest

from cnab_archive import Algorithm, Bundle, Config, InputValidationError, InvalidReferenceError, pull_bundle


class StaticResolver:

    def __init__(self, bundle):
        self.bundle = bundle
        self.requested = []

    def resolve(self, reference):
        self.requested.append(str(reference))
        return self.bundle


class TestPull:

    def test_resolves_normalized_reference(self, app_bundle):
        resolver = StaticResolver(app_bundle)
        text = pull_bundle("deis/app", resolver)
        assert resolver.requested == ["docker.io/deis/app:latest"]
        assert Bundle.from_dict(json.loads(text)) == app_bundle

    def test_writes_output(self, tmp_path, app_bundle):
        out = tmp_path / "pulled" / "bundle.json"
        pull_bundle("example.com/bundles/app:1.0.0", StaticResolver(app_bundle), out)
        assert Bundle.from_json(out.read_bytes()) == app_bundle

    def test_invalid_name(self, app_bundle):
        with pytest.raises(InvalidReferenceError):
            pull_bundle("NOT VALID", StaticResolver(app_bundle))


class TestConfig:

    def test_defaults_under_home(self, tmp_path):
        cfg = Config.for_home(tmp_path)
        assert cfg.public_keyring == tmp_path / "public.ring"
        assert cfg.secret_keyring == tmp_path / "secret.ring"
        assert cfg.logs_dir == tmp_path / "logs"
        assert cfg.digest_algorithm is Algorithm.SHA256
        assert cfg.native_image_types == ("docker", "oci")

    def test_from_env(self, tmp_path):
        cfg = Config.from_env({
            "CNAB_HOME": str(tmp_path),
            "CNAB_DRIVER_PATH": os.pathsep.join([str(tmp_path / 'a'), str(tmp_path / 'b')]),
            "CNAB_DRIVER_TIMEOUT": "12.5",
            "CNAB_DIGEST_ALGORITHM": "SHA512",
            "CNAB_DOCKER": "podman",
        })
        assert cfg.home == tmp_path
        assert cfg.driver_path == [tmp_path / "a", tmp_path / "b"]
        assert cfg.driver_timeout == 12.5
        assert cfg.digest_algorithm is Algorithm.SHA512
        assert cfg.docker_binary == "podman"

    def test_driver_path_defaults_to_path(self):
        cfg = Config.from_env({"PATH": os.pathsep.join(["/usr/local/bin", "/usr/bin"])})
        assert cfg.driver_path == [Path("/usr/local/bin"), Path("/usr/bin")]
        assert cfg.home == Path("~/.cnab-archive").expanduser()

    @pytest.mark.parametrize("env", [
        {"CNAB_DRIVER_TIMEOUT": "soon"},
        {"CNAB_DRIVER_TIMEOUT": "-1"},
        {"CNAB_DIGEST_ALGORITHM": "md5"},
    ])
    def test_invalid_values(self, env):
        with pytest.raises(InputValidationError):
            Config.from_env(env)
