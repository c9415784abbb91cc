"""Image reference parsing.

Turns user-facing image strings such as ``nginx``, ``user/app:1.2`` or
``registry.example.com:5000/team/app:edge`` into the (registry, repository,
tag) triple the registry v2 API is addressed by.
"""

from dataclasses import dataclass
from typing import Tuple

DEFAULT_REGISTRY = "registry-1.docker.io"
DEFAULT_NAMESPACE = "library"
DEFAULT_TAG = "latest"

# Historical hostnames of the default registry
DEFAULT_REGISTRY_ALIASES = ("docker.io", "index.docker.io")


@dataclass(frozen=True)
class ImageReference:
    """A parsed image reference."""
    registry: str
    repository: str
    tag: str

    @property
    def is_default_registry(self) -> bool:
        return self.registry == DEFAULT_REGISTRY

    @property
    def manifest_url(self) -> str:
        return f"https://{self.registry}/v2/{self.repository}/manifests/{self.tag}"

    def __str__(self) -> str:
        return f"{self.registry}/{self.repository}:{self.tag}"


def _strip_digest(reference: str) -> str:
    at_pos = reference.rfind('@')
    if at_pos != -1:
        return reference[:at_pos]
    return reference


def split_repository_tag(reference: str) -> Tuple[str, str]:
    """Split ``reference`` into (repository, tag).

    The colon is only a tag separator when it comes after the last slash,
    so ``localhost:5000/app`` keeps its port and gets the default tag.
    """
    reference = _strip_digest(reference)
    last_slash = reference.rfind('/')
    last_colon = reference.rfind(':')
    if last_colon > last_slash:
        return reference[:last_colon], reference[last_colon + 1:]
    return reference, DEFAULT_TAG


def _is_registry_host(segment: str) -> bool:
    return '.' in segment or ':' in segment or segment == 'localhost'


def parse_image_ref(reference: str) -> ImageReference:
    """
    Parse an image reference into registry, repository and tag.

    Examples::

        nginx                          -> registry-1.docker.io / library/nginx : latest
        nginx:1.25                     -> registry-1.docker.io / library/nginx : 1.25
        user/repo:tag                  -> registry-1.docker.io / user/repo     : tag
        ghcr.io/user/repo:v1           -> ghcr.io              / user/repo     : v1
        registry.example.com:5000/img  -> registry.example.com:5000 / img      : latest

    Never raises. Malformed input produces a best-effort reference and
    surfaces later as a registry failure.
    """
    path, tag = split_repository_tag(reference)
    if not tag:
        tag = DEFAULT_TAG

    registry = DEFAULT_REGISTRY
    repository = path

    if '/' in path:
        first, rest = path.split('/', 1)
        if _is_registry_host(first):
            registry = first
            repository = rest
            if registry in DEFAULT_REGISTRY_ALIASES:
                registry = DEFAULT_REGISTRY

    if registry == DEFAULT_REGISTRY and '/' not in repository:
        repository = f"{DEFAULT_NAMESPACE}/{repository}"

    return ImageReference(registry=registry, repository=repository, tag=tag)


def is_pinned(reference: str) -> bool:
    """Return True for references that can never resolve to a newer image.

    That is an empty reference, a bare image id (``sha256:...``) or any
    reference pinned with ``@digest``.
    """
    if not reference or reference.startswith('sha256:'):
        return True
    return '@' in reference
