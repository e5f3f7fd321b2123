"""
Pulling bundle descriptors from a registry.

The registry client is a collaborator: anything with a resolve(reference)
method returning a Bundle will do.
"""

import logging
from pathlib import Path
from typing import Protocol

from .bundle import Bundle
from .reference import Reference, get_reference


logger = logging.getLogger(__name__)


class Resolver(Protocol):
    def resolve(self, reference: Reference) -> Bundle:
        ...


def pull_bundle(name: str, resolver: Resolver, output: str | Path | None = None) -> str:
    """
    Resolve a bundle by name and return its descriptor as indented JSON.

    When output is given the JSON is also written to that file.
    """
    ref = get_reference(name)
    logger.info("pulling bundle %s", ref)
    bundle = resolver.resolve(ref)
    text = bundle.to_json()
    if output is not None:
        output = Path(output)
        output.parent.mkdir(parents=True, exist_ok=True)
        output.write_text(text + "\n", encoding="utf-8")
    return text
