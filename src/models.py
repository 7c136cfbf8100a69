"""Domain models for the image operator.

This module defines typed data structures for all operator concepts,
making illegal states unrepresentable at the type level.
"""

from dataclasses import dataclass
from enum import Enum


# =============================================================================
# Enums for constrained values
# =============================================================================


class ConditionStatus(Enum):
    """Kubernetes condition status."""

    TRUE = "True"
    FALSE = "False"
    UNKNOWN = "Unknown"


class TransferOperation(Enum):
    """Category of a registry transfer, used for metrics."""

    PUSH = "push"
    PULL = "pull"
    MIRROR = "mirror"


# =============================================================================
# Dataclasses for internal state
# =============================================================================


@dataclass(frozen=True)
class ReconcileKey:
    """Identity of the Image a reconciliation is about."""

    namespace: str
    name: str

    def __str__(self) -> str:
        return f"{self.namespace}/{self.name}"

    @classmethod
    def parse(cls, key: str) -> "ReconcileKey":
        """Split a "namespace/name" key, raising ValueError when malformed."""
        parts = key.split("/")
        if len(parts) != 2 or not parts[0] or not parts[1]:
            raise ValueError(f"unexpected key format: {key!r}")
        return cls(namespace=parts[0], name=parts[1])


@dataclass(frozen=True)
class CredentialCandidate:
    """One authentication context to try against a registry.

    The all-empty candidate means anonymous access.
    """

    username: str = ""
    password: str = ""
    identity_token: str = ""
    tls_insecure: bool = False

    @property
    def is_anonymous(self) -> bool:
        return not (self.username or self.password or self.identity_token)

    def __repr__(self) -> str:
        # Never leak secrets into logs
        return (
            f"CredentialCandidate(username={self.username!r}, "
            f"anonymous={self.is_anonymous}, tls_insecure={self.tls_insecure})"
        )


@dataclass(frozen=True)
class MirrorRegistryConfig:
    """Mirror registry configuration loaded from a Secret."""

    address: str
    username: str = ""
    password: str = ""
    repository: str = ""
    token: str = ""
    insecure: bool = False

    @classmethod
    def from_secret_data(cls, data: dict[str, str]) -> "MirrorRegistryConfig":
        """Create from already decoded Secret data."""
        if not data:
            raise ValueError("empty mirror registry config found")
        address = data.get("address", "")
        if not address:
            raise ValueError("address is required in mirror registry config")
        return cls(
            address=address,
            username=data.get("username", ""),
            password=data.get("password", ""),
            repository=data.get("repository", ""),
            token=data.get("token", ""),
            insecure=data.get("insecure", "") == "true",
        )

    def to_candidate(self) -> CredentialCandidate:
        """Credentials the operator uses for the mirror registry."""
        return CredentialCandidate(
            username=self.username,
            password=self.password,
            identity_token=self.token,
            tls_insecure=self.insecure,
        )


@dataclass(frozen=True)
class ImportOpts:
    """Request to create an ImageImport.

    mirror and insecure are tri-state: None leaves the Image default in place.
    """

    namespace: str
    target_image: str
    source: str
    mirror: bool | None = None
    insecure: bool | None = None

    def to_spec(self) -> dict[str, object]:
        """Convert to an ImageImport spec dict."""
        spec: dict[str, object] = {"targetImage": self.target_image}
        if self.source:
            spec["from"] = self.source
        if self.mirror is not None:
            spec["mirror"] = self.mirror
        if self.insecure is not None:
            spec["insecure"] = self.insecure
        return spec


@dataclass
class HashReference:
    """Result of a successful import."""

    source: str
    image_reference: str
    imported_at: str = ""

    def to_dict(self) -> dict[str, str]:
        """Convert to dict for Kubernetes status."""
        return {
            "from": self.source,
            "importedAt": self.imported_at,
            "imageReference": self.image_reference,
        }

    @classmethod
    def from_dict(cls, data: dict[str, str]) -> "HashReference":
        """Create from Kubernetes status dict."""
        return cls(
            source=data.get("from", ""),
            image_reference=data.get("imageReference", ""),
            imported_at=data.get("importedAt", ""),
        )


# =============================================================================
# Exceptions
# =============================================================================


class OperatorError(Exception):
    """Base exception for operator errors."""

    pass


class ResourceNotFoundError(OperatorError):
    """A Kubernetes object vanished or never existed."""

    pass


class ConfigurationError(OperatorError):
    """Invalid or missing configuration."""

    pass


class ContractViolationError(OperatorError):
    """A caller used an operation in a way it never supports.

    Not retried: this is a programming error, not an environmental fault.
    """

    pass


class TransferError(OperatorError):
    """A single registry transfer attempt failed."""

    pass


class DigestError(OperatorError):
    """The manifest digest of a completed copy could not be determined."""

    pass


class StagingError(OperatorError):
    """A temporary local archive could not be created."""

    pass


class DeadlineExceededError(OperatorError):
    """The operation ran out of time or the operator is shutting down."""

    pass


class NoRegistriesError(OperatorError):
    """An unqualified image name with no registries configured to search."""

    pass


class CandidatesExhaustedError(OperatorError):
    """Every credential candidate failed.

    Keeps every underlying failure, in the order the candidates were tried.
    """

    def __init__(self, message: str, causes: list[Exception] | None = None) -> None:
        self.causes: list[Exception] = list(causes or [])
        super().__init__(message)

    def has_cause(self, exc_type: type[BaseException]) -> bool:
        """Check if at least one cause is an instance of exc_type."""
        return any(isinstance(cause, exc_type) for cause in self.causes)

    def __str__(self) -> str:
        message = super().__str__()
        if not self.causes:
            return f"{message}: no candidates to try"
        details = "; ".join(
            f"[{i}] {type(cause).__name__}: {cause}" for i, cause in enumerate(self.causes, 1)
        )
        return f"{message}: {len(self.causes)} error(s) occurred: {details}"

