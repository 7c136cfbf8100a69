"""Container image reference parsing.

Supports the two transports the operator uses:
- docker://domain/path[:tag|@digest] (the "docker://" prefix is optional)
- docker-archive:/path/to/file.tar
"""

import re
from dataclasses import dataclass, replace

DOCKER_TRANSPORT = "docker"
ARCHIVE_TRANSPORT = "docker-archive"

_DIGEST_RE = re.compile(r"^[a-z0-9]+(?:[.+_-][a-z0-9]+)*:[a-fA-F0-9]{32,}$")
_TAG_RE = re.compile(r"^[\w][\w.-]{0,127}$")
_PATH_COMPONENT_RE = re.compile(r"^[a-z0-9]+(?:(?:[._]|__|-+)[a-z0-9]+)*$")


def is_valid_digest(value: str) -> bool:
    """Check if a string looks like "algorithm:hex"."""
    return isinstance(value, str) and bool(_DIGEST_RE.match(value))


def _looks_like_domain(component: str) -> bool:
    return "." in component or ":" in component or component == "localhost"


@dataclass(frozen=True)
class ImageReference:
    """A pointer to image content.

    domain is empty for unqualified names such as "centos:latest"; callers
    decide which registries to search for those.
    """

    path: str
    domain: str = ""
    tag: str = ""
    digest: str = ""
    transport: str = DOCKER_TRANSPORT

    @property
    def name(self) -> str:
        """Repository name including the domain, without tag or digest."""
        if self.transport == ARCHIVE_TRANSPORT or not self.domain:
            return self.path
        return f"{self.domain}/{self.path}"

    @property
    def is_local(self) -> bool:
        return self.transport == ARCHIVE_TRANSPORT

    def with_domain(self, domain: str) -> "ImageReference":
        """Qualify the reference with a registry domain."""
        return replace(self, domain=domain)

    def with_digest(self, digest: str) -> "ImageReference":
        """Pin the reference to a digest, dropping any tag."""
        if not is_valid_digest(digest):
            raise ValueError(f"invalid digest: {digest!r}")
        return replace(self, tag="", digest=digest)

    def transport_name(self) -> str:
        """Reference in the form the transfer tool expects."""
        if self.is_local:
            return f"{ARCHIVE_TRANSPORT}:{self.path}"
        return f"{DOCKER_TRANSPORT}://{self}"

    def __str__(self) -> str:
        if self.is_local:
            return self.path
        if self.digest:
            return f"{self.name}@{self.digest}"
        if self.tag:
            return f"{self.name}:{self.tag}"
        return self.name


def local_archive(path: str) -> ImageReference:
    """Reference to a docker-archive tar file on disk."""
    return ImageReference(path=path, transport=ARCHIVE_TRANSPORT)


def parse_reference(text: str) -> ImageReference:
    """Parse and validate a reference string.

    Examples:
        'docker.io/library/centos:8' -> domain 'docker.io', tag '8'
        'centos' -> unqualified, no domain
        'docker-archive:/tmp/x.tar' -> local archive
    """
    if text.startswith(f"{ARCHIVE_TRANSPORT}:"):
        path = text[len(ARCHIVE_TRANSPORT) + 1:]
        if not path:
            raise ValueError(f"invalid reference {text!r}: empty archive path")
        return local_archive(path)

    remainder = text.removeprefix(f"{DOCKER_TRANSPORT}://")
    if not remainder:
        raise ValueError("invalid reference: empty name")

    digest = ""
    if "@" in remainder:
        remainder, digest = remainder.split("@", 1)
        if not is_valid_digest(digest):
            raise ValueError(f"invalid reference {text!r}: bad digest {digest!r}")

    tag = ""
    last_slash = remainder.rfind("/")
    colon = remainder.rfind(":")
    if colon > last_slash:
        remainder, tag = remainder[:colon], remainder[colon + 1:]
        if not _TAG_RE.match(tag):
            raise ValueError(f"invalid reference {text!r}: bad tag {tag!r}")

    domain = ""
    components = remainder.split("/")
    if len(components) > 1 and _looks_like_domain(components[0]):
        domain = components.pop(0)

    if not components or not all(_PATH_COMPONENT_RE.match(c) for c in components):
        raise ValueError(f"invalid reference {text!r}: bad repository name")

    return ImageReference(path="/".join(components), domain=domain, tag=tag, digest=digest)
