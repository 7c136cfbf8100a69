"""Backend registry store.

Moves images into and out of the registry the operator mirrors images to.
Pushing an image into the registry is a load, pulling it out into a local tar
file is a save, after the 'docker load/save' commands.
"""

import logging
import os
import tempfile
import threading
import time

from deadline import Deadline
from metrics import MetricsSink, NoopMetrics
from models import (
    CandidatesExhaustedError,
    ContractViolationError,
    CredentialCandidate,
    StagingError,
    TransferError,
    TransferOperation,
)
from reference import ImageReference, local_archive, parse_reference
from skopeo import Skopeo

logger = logging.getLogger(__name__)


class StagedLocalCopy:
    """A temporary docker-archive file and the means to delete it.

    release() is idempotent and safe to call from any thread. The copy is
    also a context manager that releases on exit.
    """

    def __init__(self, path: str) -> None:
        self.path = path
        self.reference = local_archive(path)
        self._released = False
        self._lock = threading.Lock()

    @property
    def released(self) -> bool:
        return self._released

    def release(self) -> None:
        with self._lock:
            if self._released:
                return
            self._released = True
        try:
            os.unlink(self.path)
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning("Failed to remove staged archive %s: %s", self.path, e)

    def __enter__(self) -> "StagedLocalCopy":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.release()

    def __repr__(self) -> str:
        return f"StagedLocalCopy(path={self.path!r}, released={self._released})"


class Registry:
    """Loads images into and saves images from the backend registry.

    Every call tries the configured candidates in order until one works;
    when none was configured a single anonymous candidate is used.
    """

    def __init__(
        self,
        address: str,
        candidates: list[CredentialCandidate] | None = None,
        skopeo: Skopeo | None = None,
        metrics: MetricsSink | None = None,
        staging_dir: str | None = None,
    ) -> None:
        """Initialize registry store.

        Args:
            address: Backend registry domain, e.g. "mirror.example.com:5000"
            candidates: Credentials to try, in order
            skopeo: Transfer tool
            metrics: Metrics sink, no-op by default
            staging_dir: Directory for local archives (default: IMAGE_STAGING_DIR
                env, else the system temp directory)
        """
        self.address = address
        self._candidates = list(candidates or [])
        self._skopeo = skopeo or Skopeo()
        self._metrics = metrics or NoopMetrics()
        self._staging_dir = staging_dir or os.environ.get("IMAGE_STAGING_DIR") or None

    def registry_auths(self) -> list[CredentialCandidate]:
        """Candidates to try, never empty."""
        if not self._candidates:
            return [CredentialCandidate()]
        return list(self._candidates)

    def load(
        self,
        src: ImageReference,
        src_auth: CredentialCandidate | None,
        namespace: str,
        name: str,
        deadline: Deadline,
    ) -> ImageReference:
        """Push src into the backend registry as namespace/name.

        src_auth stays the same for every attempt; only the credentials for
        the backend registry vary. Every variant of a manifest list is copied.

        Returns:
            The stored image, pinned by digest

        Raises:
            CandidatesExhaustedError: No candidate could push the image
            DigestError: The push worked but its digest is unusable
        """
        dest = parse_reference(f"{self.address}/{namespace}/{name}")
        start_time = time.monotonic()

        errors: list[Exception] = []
        for auth in self.registry_auths():
            try:
                digest = self._skopeo.copy(
                    src, dest, deadline, src_auth=src_auth, dst_auth=auth, all_images=True
                )
            except TransferError as e:
                logger.info("Push of %s to %s failed with %r: %s", src, dest, auth, e)
                errors.append(e)
                continue
            except BaseException:
                self._metrics.transfer(TransferOperation.PUSH, False, time.monotonic() - start_time)
                raise

            self._metrics.transfer(TransferOperation.PUSH, True, time.monotonic() - start_time)
            return dest.with_digest(digest)

        self._metrics.transfer(TransferOperation.PUSH, False, time.monotonic() - start_time)
        raise CandidatesExhaustedError(f"unable to load image {src}", errors)

    def save(self, ref: ImageReference, deadline: Deadline) -> StagedLocalCopy:
        """Pull ref from the backend registry into a local tar file.

        The caller owns the returned copy and must release it.

        Raises:
            ContractViolationError: ref is not hosted by this registry
            StagingError: The local tar file could not be created
            CandidatesExhaustedError: No candidate could pull the image
        """
        if ref.domain != self.address:
            raise ContractViolationError(
                f"backend registry {self.address} doesn't know about image {ref}"
            )

        start_time = time.monotonic()
        errors: list[Exception] = []
        for auth in self.registry_auths():
            staged = self.new_local_reference()
            try:
                self._skopeo.copy(ref, staged.reference, deadline, src_auth=auth)
            except TransferError as e:
                staged.release()
                logger.info("Pull of %s failed with %r: %s", ref, auth, e)
                errors.append(e)
                continue
            except BaseException:
                staged.release()
                self._metrics.transfer(TransferOperation.PULL, False, time.monotonic() - start_time)
                raise

            self._metrics.transfer(TransferOperation.PULL, True, time.monotonic() - start_time)
            return staged

        self._metrics.transfer(TransferOperation.PULL, False, time.monotonic() - start_time)
        raise CandidatesExhaustedError(f"unable to save image {ref}", errors)

    def new_local_reference(self) -> StagedLocalCopy:
        """Create an empty temporary tar file to copy an image into."""
        try:
            fd, path = tempfile.mkstemp(prefix="image-", suffix=".tar", dir=self._staging_dir)
            os.close(fd)
        except OSError as e:
            raise StagingError(f"error creating temp file: {e}") from e
        return StagedLocalCopy(path)

    def __repr__(self) -> str:
        return f"Registry(address={self.address!r}, candidates={len(self._candidates)})"
