"""System context: registry credentials and search configuration.

Resolves which credentials to try against a registry, what the backend
(mirror) registry is, and where to look for unqualified image names.
"""

import json
import logging
import os
from typing import Any

from kubernetes.client import ApiException, CoreV1Api

from constants import (
    DEFAULT_UNQUALIFIED_REGISTRIES,
    DOCKER_CONFIG_KEY,
    DOCKER_CONFIG_SECRET_TYPE,
    MIRROR_CONFIG_SECRET,
)
from deadline import Deadline
from metrics import MetricsSink, NoopMetrics
from models import (
    ConfigurationError,
    CredentialCandidate,
    MirrorRegistryConfig,
    NoRegistriesError,
    OperatorError,
)
from reference import ImageReference
from resources.registry import Registry
from skopeo import Skopeo
from utils import decode_secret_data

logger = logging.getLogger(__name__)


def unqualified_registries_from_env() -> list[str]:
    """Registries searched for unqualified image names.

    Configuration via environment variables:
        UNQUALIFIED_REGISTRIES: Comma separated list (default: docker.io)
    """
    value = os.environ.get("UNQUALIFIED_REGISTRIES")
    if value is None:
        return list(DEFAULT_UNQUALIFIED_REGISTRIES)
    return [registry.strip() for registry in value.split(",") if registry.strip()]


def _request_timeout(deadline: Deadline | None) -> float | None:
    return deadline.api_timeout() if deadline is not None else None


def _auth_to_candidate(entry: dict[str, Any], insecure: bool) -> CredentialCandidate:
    """Convert one "auths" entry of a docker config into a candidate."""
    username = entry.get("username", "")
    password = entry.get("password", "")
    if not username and entry.get("auth"):
        decoded = decode_secret_data({"auth": entry["auth"]}).get("auth", "")
        username, _, password = decoded.partition(":")
    return CredentialCandidate(
        username=username,
        password=password,
        identity_token=entry.get("identitytoken", ""),
        tls_insecure=insecure,
    )


class SysContext:
    """Credential and registry resolution for a namespace."""

    def __init__(
        self,
        core_api: CoreV1Api,
        unqualified_registries: list[str] | None = None,
        skopeo: Skopeo | None = None,
        metrics: MetricsSink | None = None,
    ) -> None:
        """Initialize system context.

        Args:
            core_api: Kubernetes CoreV1Api used to read secrets
            unqualified_registries: Registries for unqualified names
                (default: from UNQUALIFIED_REGISTRIES env)
            skopeo: Transfer tool handed to registry stores
            metrics: Metrics sink handed to registry stores
        """
        self._core_api = core_api
        if unqualified_registries is None:
            unqualified_registries = unqualified_registries_from_env()
        self._unqualified_registries = unqualified_registries
        self._skopeo = skopeo or Skopeo()
        self._metrics = metrics or NoopMetrics()

    def unqualified_registries(self) -> list[str]:
        return list(self._unqualified_registries)

    # -------------------------------------------------------------------------
    # Mirror registry
    # -------------------------------------------------------------------------

    def mirror_config(
        self, namespace: str, deadline: Deadline | None = None
    ) -> MirrorRegistryConfig:
        """Read the mirror configuration.

        The configuration in the given namespace wins; when there is none the
        one in the operator's own namespace (POD_NAMESPACE) is used. Every
        API request is bounded by deadline when one is given.

        Raises:
            ConfigurationError: No usable configuration was found
        """
        try:
            return self._parse_mirror_config(namespace, deadline)
        except ApiException as e:
            if e.status != 404:
                raise ConfigurationError(f"unable to load local mirror config: {e}") from e

        pod_namespace = os.environ.get("POD_NAMESPACE", "")
        if not pod_namespace:
            raise ConfigurationError("unbound POD_NAMESPACE variable")

        try:
            return self._parse_mirror_config(pod_namespace, deadline)
        except ApiException as e:
            raise ConfigurationError(f"unable to load global mirror config: {e}") from e

    def _parse_mirror_config(
        self, namespace: str, deadline: Deadline | None
    ) -> MirrorRegistryConfig:
        secret = self._core_api.read_namespaced_secret(
            MIRROR_CONFIG_SECRET, namespace, _request_timeout=_request_timeout(deadline)
        )
        try:
            return MirrorRegistryConfig.from_secret_data(decode_secret_data(secret.data))
        except ValueError as e:
            raise ConfigurationError(
                f"invalid mirror config {namespace}/{MIRROR_CONFIG_SECRET}: {e}"
            ) from e

    def mirror_registry_candidate(
        self, namespace: str, deadline: Deadline | None = None
    ) -> CredentialCandidate:
        """Credentials used when talking to the mirror registry."""
        return self.mirror_config(namespace, deadline).to_candidate()

    def registry_store(self, namespace: str, deadline: Deadline | None = None) -> Registry:
        """Backend registry store for images mirrored from namespace.

        Raises:
            ConfigurationError: No mirror registry is configured
        """
        config = self.mirror_config(namespace, deadline)
        return Registry(
            address=config.address,
            candidates=[config.to_candidate()],
            skopeo=self._skopeo,
            metrics=self._metrics,
        )

    # -------------------------------------------------------------------------
    # Credential candidates
    # -------------------------------------------------------------------------

    def candidates_for(
        self,
        ref: ImageReference,
        namespace: str,
        insecure: bool,
        deadline: Deadline | None = None,
    ) -> list[CredentialCandidate]:
        """Ordered credentials to try when reading ref.

        Images hosted by the mirror registry get the mirror credentials only.
        Otherwise every docker config secret in the namespace with an entry
        for the reference's domain yields one candidate, followed by an
        anonymous candidate if insecure access was requested.
        """
        try:
            config = self.mirror_config(namespace, deadline)
        except ConfigurationError as e:
            logger.info("No mirror registry configured, moving on: %s", e)
        else:
            if config.address == ref.domain:
                return [config.to_candidate()]

        auths = self._auths_for(ref, namespace, deadline)
        candidates = [_auth_to_candidate(entry, insecure) for entry in auths]
        if insecure:
            candidates.append(CredentialCandidate(tls_insecure=True))
        return candidates

    def _auths_for(
        self, ref: ImageReference, namespace: str, deadline: Deadline | None
    ) -> list[dict[str, Any]]:
        """Docker config auth entries for the registry hosting ref."""
        if not ref.domain:
            return []

        try:
            secrets = self._core_api.list_namespaced_secret(
                namespace, _request_timeout=_request_timeout(deadline)
            ).items
        except ApiException as e:
            if e.status == 404:
                return []
            raise OperatorError(f"fail to list secrets in {namespace}: {e}") from e

        auths: list[dict[str, Any]] = []
        for secret in secrets:
            if secret.type != DOCKER_CONFIG_SECRET_TYPE:
                continue

            name = f"{secret.metadata.namespace}/{secret.metadata.name}"
            data = decode_secret_data(secret.data).get(DOCKER_CONFIG_KEY)
            if not data:
                continue

            try:
                entry = json.loads(data)["auths"][ref.domain]
            except KeyError:
                continue
            except (ValueError, TypeError) as e:
                logger.info("Ignoring secret %s: %s", name, e)
                continue

            if not isinstance(entry, dict):
                logger.info("Ignoring secret %s: malformed auth entry", name)
                continue
            auths.append(entry)
        return auths

    # -------------------------------------------------------------------------
    # Registry search
    # -------------------------------------------------------------------------

    def registries_to_search(self, domain: str) -> list[str]:
        """Registries to look for an image in.

        Either the image's own domain or, for unqualified names such as
        "centos:latest", the configured unqualified registries.

        Raises:
            NoRegistriesError: Unqualified name and nothing configured
        """
        if domain:
            return [domain]
        if not self._unqualified_registries:
            raise NoRegistriesError("no unqualified registries found")
        return list(self._unqualified_registries)
