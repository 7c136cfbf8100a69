"""Image synchronization: processes pending ImageImports for an Image."""

import copy
import logging
import time
from collections.abc import Mapping
from typing import Any

from kubernetes.client import ApiException, CustomObjectsApi

from constants import (
    API_GROUP,
    API_VERSION,
    IMAGE_IMPORT_PLURAL,
    IMAGE_KIND,
    IMAGE_PLURAL,
    MAX_HASH_REFERENCES,
    MAX_IMPORT_ATTEMPTS,
)
from deadline import Deadline
from events import ResourceEventListener, ResourceInformer
from metrics import MetricsSink, NoopMetrics
from models import (
    CandidatesExhaustedError,
    ConditionStatus,
    CredentialCandidate,
    DeadlineExceededError,
    HashReference,
    OperatorError,
    ResourceNotFoundError,
    TransferError,
    TransferOperation,
)
from reference import ImageReference, parse_reference
from skopeo import Skopeo
from sysctx import SysContext
from utils import now_iso, set_condition

logger = logging.getLogger(__name__)


def is_pending(image_import: Mapping[str, Any]) -> bool:
    """Check if an ImageImport still needs to be processed."""
    status = image_import.get("status") or {}
    if status.get("hashReference"):
        return False
    return status.get("importAttempts", 0) < MAX_IMPORT_ATTEMPTS


def _resolve_flag(name: str, image_import: Mapping[str, Any], image: Mapping[str, Any]) -> bool:
    """An ImageImport override, falling back to the Image default."""
    value = (image_import.get("spec") or {}).get(name)
    if value is None:
        value = (image.get("spec") or {}).get(name, False)
    return bool(value)


class ImageService:
    """Synchronization capability for Images.

    get() and sync() are driven by the dispatcher; add_event_handler() wires
    the dispatcher to Image watch events.
    """

    def __init__(
        self,
        custom_api: CustomObjectsApi,
        sysctx: SysContext,
        skopeo: Skopeo | None = None,
        metrics: MetricsSink | None = None,
    ) -> None:
        self._custom_api = custom_api
        self._sysctx = sysctx
        self._skopeo = skopeo or Skopeo()
        self._metrics = metrics or NoopMetrics()
        self.informer = ResourceInformer(IMAGE_KIND)

    def add_event_handler(self, listener: ResourceEventListener) -> None:
        self.informer.add_event_handler(listener)

    def get(self, deadline: Deadline, namespace: str, name: str) -> dict[str, Any]:
        """Fetch an Image.

        Raises:
            ResourceNotFoundError: The Image does not exist
        """
        try:
            return self._custom_api.get_namespaced_custom_object(
                API_GROUP,
                API_VERSION,
                namespace,
                IMAGE_PLURAL,
                name,
                _request_timeout=deadline.api_timeout(),
            )
        except ApiException as e:
            if e.status == 404:
                raise ResourceNotFoundError(f"Image {namespace}/{name} not found") from e
            raise

    def pending_imports(
        self, deadline: Deadline, namespace: str, name: str
    ) -> list[dict[str, Any]]:
        """ImageImports targeting the Image that still need processing, oldest first."""
        result = self._custom_api.list_namespaced_custom_object(
            API_GROUP,
            API_VERSION,
            namespace,
            IMAGE_IMPORT_PLURAL,
            _request_timeout=deadline.api_timeout(),
        )
        imports = [
            item
            for item in result.get("items", [])
            if (item.get("spec") or {}).get("targetImage") == name and is_pending(item)
        ]
        imports.sort(key=lambda item: item["metadata"].get("creationTimestamp", ""))
        return imports

    def sync(self, deadline: Deadline, image: Mapping[str, Any]) -> None:
        """Process the pending imports of the Image, oldest first.

        Stops at the first failing import; the dispatcher retries the Image
        after its backoff. Status writes made here do not requeue the Image
        because the informers skip events that leave the generation alone.
        """
        namespace = image["metadata"]["namespace"]
        name = image["metadata"]["name"]

        pending = self.pending_imports(deadline, namespace, name)
        if not pending:
            logger.debug("No pending imports for image %s/%s", namespace, name)
            return

        for image_import in pending:
            deadline.check()
            image = self.process_import(deadline, image, image_import)

    def process_import(
        self,
        deadline: Deadline,
        image: Mapping[str, Any],
        image_import: Mapping[str, Any],
    ) -> dict[str, Any]:
        """Import one ImageImport and record the outcome on both objects.

        Returns:
            The Image carrying its updated status
        """
        namespace = image["metadata"]["namespace"]
        name = image["metadata"]["name"]
        import_name = image_import["metadata"]["name"]
        source = (image_import.get("spec") or {}).get("from") or (image.get("spec") or {}).get(
            "from", ""
        )
        mirror = _resolve_flag("mirror", image_import, image)
        insecure = _resolve_flag("insecure", image_import, image)

        logger.info(
            f"Processing import {namespace}/{import_name} for image {name} "
            f"(from={source}, mirror={mirror}, insecure={insecure})"
        )
        try:
            hash_reference = self.import_image(deadline, namespace, name, source, mirror, insecure)
        except Exception as e:
            logger.error(f"Import {namespace}/{import_name} failed: {e}")
            self._metrics.image_import(False)
            self._record_import_failure(deadline, namespace, image_import, e)
            raise

        self._metrics.image_import(True)
        self._record_import_success(deadline, namespace, image_import, hash_reference)
        status = self._record_image_reference(deadline, namespace, image, hash_reference)
        logger.info(f"Imported {source} as {hash_reference.image_reference}")
        return {**image, "status": status}

    def import_image(
        self,
        deadline: Deadline,
        namespace: str,
        name: str,
        source: str,
        mirror: bool,
        insecure: bool,
    ) -> HashReference:
        """Resolve source to a digest, mirroring it into the backend if asked.

        Every registry to search and every credential candidate for it is
        tried in order until the source digest can be read.

        Raises:
            CandidatesExhaustedError: No candidate could read the source
            NoRegistriesError: Unqualified source and nowhere to look
        """
        if not source:
            raise OperatorError(f"no source for image {namespace}/{name}")
        try:
            ref = parse_reference(source)
        except ValueError as e:
            raise OperatorError(f"invalid source reference: {e}") from e

        errors: list[Exception] = []
        for registry in self._sysctx.registries_to_search(ref.domain):
            qualified = ref.with_domain(registry)
            for auth in self._sysctx.candidates_for(qualified, namespace, insecure, deadline):
                try:
                    digest = self._skopeo.inspect_digest(qualified, deadline, auth)
                except TransferError as e:
                    logger.debug("Reading %s with %r failed: %s", qualified, auth, e)
                    errors.append(e)
                    continue

                pinned = qualified.with_digest(digest)
                if mirror:
                    pinned = self.mirror(deadline, pinned, auth, namespace, name)
                return HashReference(
                    source=source, image_reference=str(pinned), imported_at=now_iso()
                )

        raise CandidatesExhaustedError(f"unable to import image {source}", errors)

    def mirror(
        self,
        deadline: Deadline,
        src: ImageReference,
        src_auth: CredentialCandidate,
        namespace: str,
        name: str,
    ) -> ImageReference:
        """Copy src into the backend registry."""
        store = self._sysctx.registry_store(namespace, deadline)
        start_time = time.monotonic()
        try:
            pinned = store.load(src, src_auth, namespace, name, deadline)
        except Exception:
            self._metrics.transfer(TransferOperation.MIRROR, False, time.monotonic() - start_time)
            raise
        self._metrics.transfer(TransferOperation.MIRROR, True, time.monotonic() - start_time)
        return pinned

    # -------------------------------------------------------------------------
    # Status bookkeeping
    # -------------------------------------------------------------------------

    def _patch_status(
        self,
        deadline: Deadline,
        namespace: str,
        plural: str,
        name: str,
        status: dict[str, Any],
    ) -> None:
        self._custom_api.patch_namespaced_custom_object_status(
            API_GROUP,
            API_VERSION,
            namespace,
            plural,
            name,
            {"status": status},
            _request_timeout=deadline.api_timeout(),
        )

    def _record_import_success(
        self,
        deadline: Deadline,
        namespace: str,
        image_import: Mapping[str, Any],
        hash_reference: HashReference,
    ) -> None:
        status = copy.deepcopy(dict(image_import.get("status") or {}))
        status["importAttempts"] = status.get("importAttempts", 0) + 1
        status["hashReference"] = hash_reference.to_dict()
        status["lastAttemptTime"] = now_iso()
        set_condition(status, "Imported", ConditionStatus.TRUE.value, "Imported", "")
        self._patch_status(
            deadline, namespace, IMAGE_IMPORT_PLURAL, image_import["metadata"]["name"], status
        )

    def _record_import_failure(
        self,
        deadline: Deadline,
        namespace: str,
        image_import: Mapping[str, Any],
        error: Exception,
    ) -> None:
        status = copy.deepcopy(dict(image_import.get("status") or {}))
        status["importAttempts"] = status.get("importAttempts", 0) + 1
        status["lastAttemptTime"] = now_iso()
        set_condition(status, "Imported", ConditionStatus.FALSE.value, "Error", str(error)[:200])
        try:
            self._patch_status(
                deadline, namespace, IMAGE_IMPORT_PLURAL, image_import["metadata"]["name"], status
            )
        except (ApiException, DeadlineExceededError) as e:
            logger.warning(f"Failed to record import failure: {e}")

    def _record_image_reference(
        self,
        deadline: Deadline,
        namespace: str,
        image: Mapping[str, Any],
        hash_reference: HashReference,
    ) -> dict[str, Any]:
        status = copy.deepcopy(dict(image.get("status") or {}))
        history = [hash_reference.to_dict(), *status.get("hashReferences", [])]
        status["hashReferences"] = history[:MAX_HASH_REFERENCES]
        set_condition(status, "Ready", ConditionStatus.TRUE.value, "Imported", "")
        self._patch_status(deadline, namespace, IMAGE_PLURAL, image["metadata"]["name"], status)
        return status
