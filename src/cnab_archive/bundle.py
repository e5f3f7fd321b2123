"""
Bundle descriptor model.

A bundle names an application, its version, the component images it
references and the invocation images that run its lifecycle actions.
Fields this model does not interpret are carried through untouched so
that load and serialize never drop descriptor content.
"""

import json
import re
from dataclasses import dataclass, field
from typing import Any

from .canonical import canonical_bytes
from .errors import InvalidReferenceError, MalformedBundleError
from .reference import parse_reference


DEFAULT_IMAGE_TYPE = "oci"

# name and version become part of archive and staging file names
_UNSAFE_PATH = re.compile(r"[/\\\x00]|\.\.")


@dataclass
class Image:
    """A component image and, once computed, its content digest."""
    image: str
    image_type: str = DEFAULT_IMAGE_TYPE
    digest: str = ""
    extras: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict[str, Any], where: str = "image") -> "Image":
        if not isinstance(data, dict):
            raise MalformedBundleError(f"{where} must be an object")
        ref = data.get("image")
        if not isinstance(ref, str):
            raise MalformedBundleError(f"{where} is missing the 'image' field")
        for key in ("imageType", "digest"):
            if data.get(key) is not None and not isinstance(data[key], str):
                raise MalformedBundleError(f"{where}.{key} must be a string")
        extras = {k: v for k, v in data.items() if k not in ("image", "imageType", "digest")}
        return cls(
            image=ref,
            image_type=data.get("imageType") or DEFAULT_IMAGE_TYPE,
            digest=data.get("digest") or "",
            extras=extras,
        )

    def to_dict(self) -> dict[str, Any]:
        data = dict(self.extras)
        data["image"] = self.image
        data["imageType"] = self.image_type
        if self.digest:
            data["digest"] = self.digest
        return data


@dataclass
class InvocationImage(Image):
    """The image that carries out install/upgrade/uninstall for a bundle."""


@dataclass
class Bundle:
    name: str
    version: str
    images: dict[str, Image] = field(default_factory=dict)
    invocation_images: list[InvocationImage] = field(default_factory=list)
    extras: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Bundle":
        if not isinstance(data, dict):
            raise MalformedBundleError("bundle descriptor must be a JSON object")

        images_raw = data.get("images") or {}
        if not isinstance(images_raw, dict):
            raise MalformedBundleError("'images' must be an object")
        invocation_raw = data.get("invocationImages") or []
        if not isinstance(invocation_raw, list):
            raise MalformedBundleError("'invocationImages' must be an array")

        extras = {
            k: v for k, v in data.items()
            if k not in ("name", "version", "images", "invocationImages")
        }
        bundle = cls(
            name=data.get("name") or "",
            version=data.get("version") or "",
            images={
                key: Image.from_dict(value, f"images.{key}")
                for key, value in images_raw.items()
            },
            invocation_images=[
                InvocationImage.from_dict(value, f"invocationImages[{idx}]")
                for idx, value in enumerate(invocation_raw)
            ],
            extras=extras,
        )
        if not isinstance(bundle.name, str) or not bundle.name:
            raise MalformedBundleError("bundle 'name' is required")
        if not isinstance(bundle.version, str):
            raise MalformedBundleError("bundle 'version' must be a string")
        return bundle

    @classmethod
    def from_json(cls, data: bytes | str) -> "Bundle":
        try:
            parsed = json.loads(data)
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise MalformedBundleError(f"bundle descriptor is not valid JSON: {exc}") from exc
        return cls.from_dict(parsed)

    def to_dict(self) -> dict[str, Any]:
        data = dict(self.extras)
        data["name"] = self.name
        data["version"] = self.version
        if self.images:
            data["images"] = {key: image.to_dict() for key, image in self.images.items()}
        if self.invocation_images:
            data["invocationImages"] = [image.to_dict() for image in self.invocation_images]
        return data

    def to_canonical(self) -> bytes:
        """Canonical descriptor bytes; the form that gets signed."""
        try:
            return canonical_bytes(self.to_dict())
        except ValueError as exc:
            raise MalformedBundleError(f"bundle cannot be serialized: {exc}") from exc

    def to_json(self, indent: int | str | None = "\t") -> str:
        return json.dumps(self.to_dict(), indent=indent, ensure_ascii=False)

    @property
    def archive_name(self) -> str:
        return f"{self.name}-{self.version}"

    def all_images(self) -> list[Image]:
        """Images in export order: the images map, then invocation images."""
        return list(self.images.values()) + list(self.invocation_images)

    def validate(self) -> None:
        """
        Check the pre-export invariants.

        Raises:
            MalformedBundleError: If name or version is missing or unsafe
                as a file name
            InvalidReferenceError: If any image reference is not valid
        """
        if not self.name:
            raise MalformedBundleError("bundle 'name' is required")
        for label, value in (("name", self.name), ("version", self.version)):
            if _UNSAFE_PATH.search(value) or value in (".", ".."):
                raise MalformedBundleError(
                    f"bundle {label} {value!r} cannot be used in a file name",
                    {"field": label, "value": value},
                )
        if not self.version:
            raise MalformedBundleError("bundle 'version' is required")
        for key, image in self.images.items():
            _check_reference(image.image, f"images.{key}")
        for idx, image in enumerate(self.invocation_images):
            _check_reference(image.image, f"invocationImages[{idx}]")

    def require_digests(self) -> None:
        """Every image must carry a digest once export has finished."""
        missing = [image.image for image in self.all_images() if not image.digest]
        if missing:
            raise MalformedBundleError(
                f"images without digest: {', '.join(missing)}",
                {"images": missing},
            )


def _check_reference(ref: str, where: str) -> None:
    try:
        parse_reference(ref)
    except InvalidReferenceError as exc:
        raise InvalidReferenceError(f"{where}: {exc.message}", {"field": where, **exc.details}) from exc
