"""Wrapper around the skopeo binary for copying and inspecting images."""

import json
import logging
import os
import subprocess
import tempfile
from pathlib import Path

from deadline import Deadline
from models import CredentialCandidate, DigestError, TransferError
from reference import ImageReference, is_valid_digest

logger = logging.getLogger(__name__)

# How often a running skopeo process is checked for deadline expiry
POLL_INTERVAL = 0.5


def auth_args(candidate: CredentialCandidate | None, prefix: str = "") -> list[str]:
    """Build credential flags for one side of a skopeo call.

    Args:
        candidate: Credentials to use; None means skopeo's own defaults
        prefix: "src-", "dest-" or "" for single reference commands

    Example: auth_args(CredentialCandidate("u", "p"), "src-")
        -> ["--src-creds", "u:p"]
    """
    if candidate is None:
        return []

    args: list[str] = []
    if candidate.identity_token:
        args += [f"--{prefix}registry-token", candidate.identity_token]
    elif candidate.username or candidate.password:
        args += [f"--{prefix}creds", f"{candidate.username}:{candidate.password}"]
    else:
        args.append(f"--{prefix}no-creds")

    if candidate.tls_insecure:
        args.append(f"--{prefix}tls-verify=false")
    return args


def read_digest(path: Path) -> str:
    """Read the manifest digest skopeo wrote after a copy."""
    try:
        digest = path.read_text().strip()
    except OSError as e:
        raise DigestError(f"error reading manifest digest: {e}") from e
    if not is_valid_digest(digest):
        raise DigestError(f"invalid manifest digest: {digest!r}")
    return digest


class Skopeo:
    """Runs skopeo commands bounded by a Deadline."""

    def __init__(self, binary: str | None = None) -> None:
        """Initialize wrapper.

        Args:
            binary: Path to skopeo (default: SKOPEO_BINARY env, else "skopeo")
        """
        self.binary = binary or os.environ.get("SKOPEO_BINARY", "skopeo")

    def copy(
        self,
        src: ImageReference,
        dst: ImageReference,
        deadline: Deadline,
        src_auth: CredentialCandidate | None = None,
        dst_auth: CredentialCandidate | None = None,
        all_images: bool = False,
    ) -> str:
        """Copy an image and return the digest of the written manifest.

        Args:
            src: Where to read the image from
            dst: Where to write it to
            deadline: Bound for the whole copy
            src_auth: Credentials for reading src
            dst_auth: Credentials for writing dst
            all_images: Copy every variant of a manifest list, not just one

        Raises:
            TransferError: The copy failed
            DigestError: The copy succeeded but its digest is unreadable
        """
        with tempfile.TemporaryDirectory(prefix="skopeo-") as workdir:
            digest_file = Path(workdir) / "digest"
            args = ["copy", "--retry-times", "0", "--digestfile", str(digest_file)]
            if all_images:
                args.append("--all")
            args += auth_args(src_auth, "src-")
            args += auth_args(dst_auth, "dest-")
            args += [src.transport_name(), dst.transport_name()]

            self._run(args, deadline)
            return read_digest(digest_file)

    def inspect_digest(
        self,
        ref: ImageReference,
        deadline: Deadline,
        auth: CredentialCandidate | None = None,
    ) -> str:
        """Return the manifest digest of a remote image."""
        args = ["inspect", "--no-tags", *auth_args(auth), ref.transport_name()]
        output = self._run(args, deadline)
        try:
            digest = json.loads(output)["Digest"]
        except (ValueError, KeyError, TypeError) as e:
            raise TransferError(f"unexpected inspect output for {ref}: {e}") from e
        if not is_valid_digest(digest):
            raise DigestError(f"invalid manifest digest for {ref}: {digest!r}")
        return digest

    def _run(self, args: list[str], deadline: Deadline) -> str:
        """Run skopeo, killing it if the deadline passes.

        Returns:
            The command's stdout
        """
        deadline.check()
        cmd = [self.binary, *args]
        logger.debug("Running %s %s", self.binary, args[0])

        try:
            proc = subprocess.Popen(
                cmd,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
            )
        except OSError as e:
            raise TransferError(f"unable to run {self.binary}: {e}") from e

        try:
            while True:
                try:
                    stdout, stderr = proc.communicate(timeout=POLL_INTERVAL)
                    break
                except subprocess.TimeoutExpired:
                    if deadline.done():
                        proc.kill()
                        proc.communicate()
                        deadline.check()
        except BaseException:
            if proc.poll() is None:
                proc.kill()
                proc.wait()
            raise

        if proc.returncode != 0:
            message = stderr.strip() or f"exit status {proc.returncode}"
            raise TransferError(f"skopeo {args[0]} failed: {message}")
        return stdout
