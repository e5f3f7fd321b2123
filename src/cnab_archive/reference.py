"""
Image reference parsing and normalization.

Grammar (registry-style references):

    reference := name [ ":" tag ] [ "@" digest ]
    name      := [ domain "/" ] component ( "/" component )*
    domain    := host-component ( "." host-component )* [ ":" port ]

The first path element is treated as a domain only when it contains a
"." or ":" or is exactly "localhost".
"""

import re
from dataclasses import dataclass, replace

from .errors import InvalidReferenceError


DEFAULT_DOMAIN = "docker.io"
OFFICIAL_REPO_PREFIX = "library/"
DEFAULT_TAG = "latest"
NAME_TOTAL_LENGTH_MAX = 255

_COMPONENT = re.compile(r"^[a-z0-9]+(?:(?:[._]|__|-+)[a-z0-9]+)*$")
_DOMAIN = re.compile(
    r"^(?:[a-zA-Z0-9]|[a-zA-Z0-9][a-zA-Z0-9-]*[a-zA-Z0-9])"
    r"(?:\.(?:[a-zA-Z0-9]|[a-zA-Z0-9][a-zA-Z0-9-]*[a-zA-Z0-9]))*"
    r"(?::[0-9]+)?$"
)
_TAG = re.compile(r"^[\w][\w.-]{0,127}$")
_DIGEST = re.compile(r"^[A-Za-z][A-Za-z0-9]*(?:[-_+.][A-Za-z][A-Za-z0-9]*)*:[0-9a-fA-F]{32,}$")


@dataclass(frozen=True)
class Reference:
    """A parsed image reference."""
    path: str
    domain: str = ""
    tag: str = ""
    digest: str = ""

    @property
    def name(self) -> str:
        return f"{self.domain}/{self.path}" if self.domain else self.path

    def is_name_only(self) -> bool:
        return not self.tag and not self.digest

    def __str__(self) -> str:
        text = self.name
        if self.tag:
            text += ":" + self.tag
        if self.digest:
            text += "@" + self.digest
        return text


def parse_reference(text: str) -> Reference:
    """
    Parse and validate an image reference.

    Raises:
        InvalidReferenceError: If the text is not a valid reference
    """
    if not isinstance(text, str) or not text:
        raise InvalidReferenceError("image reference must be a non-empty string",
                                    {"reference": text})

    remainder, digest = text, ""
    if "@" in remainder:
        remainder, digest = remainder.split("@", 1)
        if not _DIGEST.match(digest):
            raise _invalid(text, f"invalid digest {digest!r}")

    tag = ""
    colon = remainder.rfind(":")
    if colon > remainder.rfind("/"):
        remainder, tag = remainder[:colon], remainder[colon + 1:]
        if not _TAG.match(tag):
            raise _invalid(text, f"invalid tag {tag!r}")

    if len(remainder) > NAME_TOTAL_LENGTH_MAX:
        raise _invalid(text, f"repository name longer than {NAME_TOTAL_LENGTH_MAX} characters")

    domain, path = "", remainder
    first, sep, rest = remainder.partition("/")
    if sep and ("." in first or ":" in first or first == "localhost"):
        domain, path = first, rest
        if not _DOMAIN.match(domain):
            raise _invalid(text, f"invalid registry domain {domain!r}")

    for component in path.split("/"):
        if not _COMPONENT.match(component):
            raise _invalid(text, f"invalid path component {component!r}")

    return Reference(path=path, domain=domain, tag=tag, digest=digest)


def is_valid_reference(text: str) -> bool:
    try:
        parse_reference(text)
    except InvalidReferenceError:
        return False
    return True


def normalize_reference(text: str) -> Reference:
    """
    Parse a reference and fill in the implied registry, namespace and tag.

    "postgres" becomes "docker.io/library/postgres:latest". A leading
    "scheme://" prefix is ignored.
    """
    _, sep, tail = text.partition("://")
    ref = parse_reference(tail if sep else text)

    domain, path = ref.domain, ref.path
    if not domain:
        domain = DEFAULT_DOMAIN
    if domain == DEFAULT_DOMAIN and "/" not in path:
        path = OFFICIAL_REPO_PREFIX + path

    ref = replace(ref, domain=domain, path=path)
    if ref.is_name_only():
        ref = replace(ref, tag=DEFAULT_TAG)
    return ref


def get_reference(bundle_name: str) -> Reference:
    """
    Resolve a bundle name to a normalized name:tag reference.

    Digest-only references cannot be used to name a bundle.
    """
    try:
        ref = normalize_reference(bundle_name)
    except InvalidReferenceError as exc:
        raise InvalidReferenceError(
            f"{bundle_name!r} is not a valid bundle name: {exc.message}",
            {"reference": bundle_name},
        ) from exc
    if not ref.tag:
        raise InvalidReferenceError(f"unsupported image name: {ref}", {"reference": bundle_name})
    return ref


def artifact_filename(reference: str) -> str:
    """
    File name under artifacts/ for an image reference.

    Path separators and colons become "-" so no nested directories are
    created.
    """
    return reference.replace("/", "-").replace(":", "-") + ".tar"


def _invalid(text: str, reason: str) -> InvalidReferenceError:
    return InvalidReferenceError(f"invalid image reference {text!r}: {reason}",
                                 {"reference": text})
