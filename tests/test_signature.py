"""Keyrings, clear-signing and secure loading."""

import base64
import json

import pytest
from cryptography.hazmat.primitives import serialization

from cnab_archive import (
    DetectingLoader,
    EmptyKeyringError,
    Key,
    KeyNotFoundError,
    Keyring,
    KeyringError,
    MalformedBundleError,
    NotSignedError,
    SecureLoader,
    SignatureInvalidError,
    Signer,
    get_loader,
    load_keyring,
    save_keyring,
)
from cnab_archive.signature import BEGIN_MESSAGE, decode

from conftest import write_plain, write_signed


class TestKeyring:

    def test_order_and_lookup(self):
        keys = [Key.generate("alice"), Key.generate("bob")]
        ring = Keyring(keys)
        assert len(ring) == 2
        assert [k.name for k in ring.keys()] == ["alice", "bob"]
        assert ring.key("bob") is keys[1]

    def test_unknown_key(self):
        with pytest.raises(KeyNotFoundError):
            Keyring([Key.generate("alice")]).key("mallory")

    def test_default_signing_key_is_first(self):
        ring = Keyring([Key.generate("alice"), Key.generate("bob")])
        assert ring.signing_key().name == "alice"
        assert ring.signing_key("bob").name == "bob"

    def test_empty_keyring_cannot_sign(self):
        with pytest.raises(EmptyKeyringError):
            Keyring([]).signing_key()

    def test_public_key_cannot_sign(self):
        with pytest.raises(KeyringError, match="cannot sign"):
            Keyring([Key.generate("alice").public()]).signing_key()

    @pytest.mark.parametrize("algorithm", ["ed25519", "rsa-sha256", "ecdsa-p256"])
    def test_save_and_load_preserves_order(self, tmp_path, algorithm):
        ring = Keyring([Key.generate("first", algorithm), Key.generate("second")])
        path = tmp_path / "secret.ring"
        save_keyring(ring, path, include_private=True)
        loaded = load_keyring(path)
        assert [k.name for k in loaded] == ["first", "second"]
        assert all(k.can_sign for k in loaded)
        assert loaded.key("first").algorithm == algorithm

    def test_raw_ed25519_public_key(self, tmp_path):
        key = Key.generate("alice")
        raw = key.public_key.public_bytes(
            encoding=serialization.Encoding.Raw,
            format=serialization.PublicFormat.Raw,
        )
        path = tmp_path / "public.ring"
        path.write_text(json.dumps({"keys": [{
            "name": "alice", "algorithm": "ed25519", "public_key": base64.b64encode(raw).decode(),
        }]}))
        loaded = load_keyring(path).key("alice")
        assert loaded.verify(key.sign(b"payload"), b"payload")

    def test_missing_file(self, tmp_path):
        with pytest.raises(KeyringError, match="does not exist"):
            load_keyring(tmp_path / "nope.ring")

    def test_wrong_key_type(self, tmp_path):
        rsa_key = Key.generate("r", "rsa-sha256").to_dict()
        rsa_key["algorithm"] = "ed25519"
        path = tmp_path / "bad.ring"
        path.write_text(json.dumps({"keys": [rsa_key]}))
        with pytest.raises(KeyringError, match="expected Ed25519"):
            load_keyring(path)


class TestSigner:

    def test_clearsign_embeds_canonical_payload(self, app_bundle, signing_key):
        data = Signer(signing_key).clearsign(app_bundle)
        assert data.startswith(BEGIN_MESSAGE.encode())
        envelope = decode(data)
        assert envelope.payload == app_bundle.to_canonical()
        assert envelope.signer == "alice"

    def test_signing_is_deterministic(self, app_bundle, signing_key):
        signer = Signer(signing_key)
        assert signer.clearsign(app_bundle) == signer.clearsign(app_bundle)

    def test_from_keyring_empty_fails_before_serializing(self, monkeypatch, app_bundle):
        def explode(self):
            raise AssertionError("serialized bundle despite empty keyring")

        monkeypatch.setattr(type(app_bundle), "to_canonical", explode)
        with pytest.raises(EmptyKeyringError):
            Signer.from_keyring(Keyring([])).clearsign(app_bundle)

    def test_from_keyring_named_signer(self, app_bundle):
        ring = Keyring([Key.generate("alice"), Key.generate("bob")])
        data = Signer.from_keyring(ring, "bob").clearsign(app_bundle)
        assert decode(data).signer == "bob"


class TestSecureLoader:

    def test_accepts_any_trusted_key(self, tmp_path, app_bundle):
        alice, bob = Key.generate("alice"), Key.generate("bob")
        path = write_signed(tmp_path / "bundle.cnab", app_bundle, bob)
        loader = SecureLoader(Keyring([alice.public(), bob.public()]))
        assert loader.load(path) == app_bundle

    def test_unsigned_is_not_signed_error(self, tmp_path, app_bundle, signing_key):
        path = write_plain(tmp_path / "bundle.json", app_bundle)
        with pytest.raises(NotSignedError):
            SecureLoader(Keyring([signing_key.public()])).load(path)

    def test_unknown_signer_is_invalid_signature(self, tmp_path, app_bundle, signing_key):
        path = write_signed(tmp_path / "bundle.cnab", app_bundle, Key.generate("mallory"))
        with pytest.raises(SignatureInvalidError) as excinfo:
            SecureLoader(Keyring([signing_key.public()])).load(path)
        assert not isinstance(excinfo.value, NotSignedError)

    def test_tampered_payload_is_invalid_signature(self, tmp_path, app_bundle, signing_key):
        path = write_signed(tmp_path / "bundle.cnab", app_bundle, signing_key)
        path.write_bytes(path.read_bytes().replace(b"postgres:12", b"postgres:13"))
        with pytest.raises(SignatureInvalidError):
            SecureLoader(Keyring([signing_key.public()])).load(path)

    def test_valid_signature_malformed_json(self, tmp_path, signing_key):
        from cnab_archive.signature import encode

        payload = b'{"name": "app", broken'
        data = encode(signing_key, payload, signing_key.sign(payload))
        with pytest.raises(MalformedBundleError):
            SecureLoader(Keyring([signing_key.public()])).load_bytes(data)

    def test_garbled_signature_block(self, tmp_path, app_bundle, signing_key):
        data = Signer(signing_key).clearsign(app_bundle).replace(b"-----END CNAB SIGNATURE-----", b"")
        with pytest.raises(SignatureInvalidError, match="not terminated"):
            SecureLoader(Keyring([signing_key.public()])).load_bytes(data)

    @pytest.mark.parametrize("separator", ["\u2028", "\u2029", "\x85"])
    def test_unicode_line_separators_in_payload(self, tmp_path, app_bundle, signing_key, separator):
        app_bundle.extras["description"] = f"first{separator}second"
        path = write_signed(tmp_path / "bundle.cnab", app_bundle, signing_key)
        assert separator.encode("utf-8") in path.read_bytes()

        loaded = SecureLoader(Keyring([signing_key.public()])).load(path)
        assert loaded == app_bundle
        assert loaded.extras["description"] == f"first{separator}second"


class TestDetectingLoader:

    def test_plain_json(self, tmp_path, app_bundle):
        assert DetectingLoader().load(write_plain(tmp_path / "b.json", app_bundle)) == app_bundle

    def test_signed_by_unknown_key(self, tmp_path, app_bundle):
        path = write_signed(tmp_path / "b.cnab", app_bundle, Key.generate("anyone"))
        assert DetectingLoader().load(path) == app_bundle


class TestGetLoader:

    def test_insecure_selects_detecting_loader(self, config):
        assert isinstance(get_loader(config, insecure=True), DetectingLoader)

    def test_secure_uses_public_keyring(self, config, tmp_path, app_bundle, signing_key):
        loader = get_loader(config, insecure=False)
        assert isinstance(loader, SecureLoader)
        assert loader.load(write_signed(tmp_path / "b.cnab", app_bundle, signing_key)) == app_bundle
