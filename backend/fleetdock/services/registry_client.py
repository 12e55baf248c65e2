"""Remote digest resolution for image update detection.

Resolves the digest an image reference currently points to on its registry
without pulling it. Each step runs only when the previous one failed:

1. ``docker manifest inspect`` (network errors retried), platform-aware for
   manifest lists.
2. Rate limited on Docker Hub: the same inspection against each mirror.
3. ``docker buildx imagetools inspect --raw`` (then without ``--raw``).
4. Rate limited again: the mirror list once more.
5. A throwaway ``skopeo inspect`` container.

A platform entry picked from a manifest list is pinned and inspected once
more to reach its config digest, which is what a running container records
as its image ID. The platform manifest digest is kept as an equivalent.
"""

import json
import logging
import re
from dataclasses import dataclass, field
from typing import List, Optional

from sqlalchemy.ext.asyncio import async_sessionmaker

from fleetdock.exceptions import DockerOutputParseError
from fleetdock.schemas.docker import ManifestDocument, Platform, parse_manifest
from fleetdock.services import metrics
from fleetdock.services.docker_adapter import DockerCommandAdapter, is_rate_limited
from fleetdock.services.settings_service import DEFAULT_REGISTRY_MIRRORS, SettingsService
from fleetdock.services.ssh_executor import ExecResult, SSHTarget
from fleetdock.utils.image_ref import is_docker_hub_image, split_image_ref, to_mirror_ref
from fleetdock.utils.security import sanitize_log_message

logger = logging.getLogger(__name__)

SKOPEO_IMAGE = "quay.io/skopeo/stable"
DEFAULT_PLATFORM = Platform(architecture="amd64", os="linux")

_TEXT_DIGEST_RE = re.compile(r"Digest:\s*(sha256:[0-9a-fA-F]{64})")


@dataclass
class DigestResolution:
    """Outcome of a remote digest lookup.

    ``equivalents`` holds other digests naming the same remote image, such as
    the platform manifest digest behind a config digest.
    """

    digest: Optional[str] = None
    error: Optional[str] = None
    rate_limited: bool = False
    method: Optional[str] = None
    equivalents: List[str] = field(default_factory=list)


def select_manifest_digest(doc: ManifestDocument, platform: Optional[Platform] = None) -> Optional[str]:
    """Pick the digest for a platform from a manifest or manifest list.

    For a list: the entry matching the platform exactly, else the first entry
    with a known platform, else the first entry. For a single manifest: its
    config digest, else a top-level digest.
    """
    platform = platform or DEFAULT_PLATFORM
    if doc.is_list:
        entries = [m for m in doc.manifests or [] if m.digest]
        for entry in entries:
            if (
                entry.platform
                and entry.platform.architecture == platform.architecture
                and entry.platform.os == platform.os
            ):
                return entry.digest
        for entry in entries:
            if entry.platform and entry.platform.is_known:
                return entry.digest
        return entries[0].digest if entries else None

    if doc.config and doc.config.digest:
        return doc.config.digest
    return doc.digest


def extract_imagetools_digest(output: str) -> Optional[str]:
    """Digest from ``buildx imagetools inspect`` output.

    Priority: ``config.digest``, then the first ``manifests[].digest``, then a
    top-level ``digest``. Plain-text output (no ``--raw``) is scanned for a
    ``Digest:`` line.
    """
    try:
        doc = parse_manifest(output)
    except DockerOutputParseError:
        match = _TEXT_DIGEST_RE.search(output)
        return match.group(1) if match else None

    if doc.config and doc.config.digest:
        return doc.config.digest
    for entry in doc.manifests or []:
        if entry.digest:
            return entry.digest
    return doc.digest


def extract_skopeo_digest(output: str) -> Optional[str]:
    try:
        data = json.loads(output)
    except json.JSONDecodeError:
        match = _TEXT_DIGEST_RE.search(output)
        return match.group(1) if match else None
    if isinstance(data, dict) and isinstance(data.get("Digest"), str):
        return data["Digest"]
    return None


def _is_manifest_list(output: str) -> bool:
    try:
        return parse_manifest(output).is_list
    except DockerOutputParseError:
        return False


def pinned_reference(ref: str, digest: str) -> str:
    """``repo@digest`` for a tagged reference.

    Examples:
        >>> pinned_reference("ghcr.io/org/app:1.0", "sha256:abc")
        'ghcr.io/org/app@sha256:abc'
    """
    name, _ = split_image_ref(ref)
    return f"{name}@{digest}"


def _error_text(result: ExecResult) -> str:
    text = result.transport_error or result.stderr.strip() or result.stdout.strip()
    return text or f"exit code {result.exit_code}"


class RegistryClient:
    """Image update detection protocol over the docker CLI of a host."""

    def __init__(self, docker: DockerCommandAdapter, session_factory: async_sessionmaker):
        self.docker = docker
        self.session_factory = session_factory

    async def _mirrors(self) -> list[str]:
        async with self.session_factory() as db:
            mirrors = await SettingsService.get_list(db, "registry_mirrors")
        return mirrors or DEFAULT_REGISTRY_MIRRORS.split(",")

    async def resolve_remote_digest(
        self,
        target: SSHTarget,
        image_ref: str,
        platform: Optional[Platform] = None,
    ) -> DigestResolution:
        """Resolve the registry digest of an image reference for a platform.

        Never raises for registry/CLI failures; they are reported through
        ``error`` with ``rate_limited`` set when throttling was seen.
        """
        platform = platform or DEFAULT_PLATFORM
        rate_limited = False
        safe_ref = sanitize_log_message(image_ref)

        # 1. manifest inspect
        digests, result = await self._manifest_digests(target, image_ref, platform)
        if digests:
            return self._resolved(digests, "manifest", rate_limited)
        last_error = _error_text(result)

        # 2. mirrors when Docker Hub throttles us
        if is_rate_limited(result.output):
            rate_limited = True
            metrics.registry_rate_limited_total.inc()
            logger.warning(f"Registry rate limit while inspecting {safe_ref}")
            if is_docker_hub_image(image_ref):
                digests = await self._mirror_digests(target, image_ref, platform)
                if digests:
                    return self._resolved(digests, "mirror", rate_limited)

        # 3. buildx imagetools
        digests, result = await self._imagetools_digests(target, image_ref)
        if digests:
            return self._resolved(digests, "imagetools", rate_limited)
        last_error = _error_text(result) or last_error

        # 4. mirrors again if the second failure is also throttling
        if is_rate_limited(result.output):
            rate_limited = True
            metrics.registry_rate_limited_total.inc()
            if is_docker_hub_image(image_ref):
                digests = await self._mirror_digests(target, image_ref, platform)
                if digests:
                    return self._resolved(digests, "mirror", rate_limited)

        # 5. skopeo in a throwaway container
        digest, result = await self._skopeo_digest(target, image_ref, platform)
        if digest:
            return self._resolved([digest], "skopeo", rate_limited)
        if is_rate_limited(result.output):
            rate_limited = True

        metrics.digest_resolutions_total.labels(method="failed").inc()
        logger.warning(
            f"Could not resolve remote digest for {safe_ref}: "
            f"{sanitize_log_message(last_error[:200])}"
        )
        return DigestResolution(error=last_error, rate_limited=rate_limited)

    @staticmethod
    def _resolved(digests: List[str], method: str, rate_limited: bool) -> DigestResolution:
        metrics.digest_resolutions_total.labels(method=method).inc()
        return DigestResolution(
            digest=digests[0],
            rate_limited=rate_limited,
            method=method,
            equivalents=digests[1:],
        )

    async def _config_behind(
        self, target: SSHTarget, ref: str, manifest_digest: str
    ) -> tuple[List[str], ExecResult]:
        """Config digest of a platform manifest picked from a list.

        Returns ``[config, manifest_digest]``, or an empty list when the pinned
        manifest cannot be read, so the caller moves on to the next method.
        """
        pinned = pinned_reference(ref, manifest_digest)
        result = await self.docker.run_with_retry(target, ["manifest", "inspect", pinned])
        if not result.ok:
            return [], result
        try:
            doc = parse_manifest(result.stdout)
        except DockerOutputParseError as e:
            logger.warning(f"Unparseable manifest for {sanitize_log_message(pinned)}: {e}")
            return [], result
        if doc.is_list or not (doc.config and doc.config.digest):
            logger.warning(f"No config digest in manifest {sanitize_log_message(pinned)}")
            return [], result
        return [doc.config.digest, manifest_digest], result

    async def _manifest_digests(
        self, target: SSHTarget, ref: str, platform: Platform
    ) -> tuple[List[str], ExecResult]:
        result = await self.docker.run_with_retry(target, ["manifest", "inspect", ref])
        if not result.ok:
            return [], result
        try:
            doc = parse_manifest(result.stdout)
        except DockerOutputParseError as e:
            logger.warning(f"Unparseable manifest for {sanitize_log_message(ref)}: {e}")
            return [], result
        digest = select_manifest_digest(doc, platform)
        if not digest:
            return [], result
        if doc.is_list:
            return await self._config_behind(target, ref, digest)
        return [digest], result

    async def _mirror_digests(self, target: SSHTarget, ref: str, platform: Platform) -> List[str]:
        for mirror in await self._mirrors():
            mirror_ref = to_mirror_ref(ref, mirror)
            digests, _ = await self._manifest_digests(target, mirror_ref, platform)
            if digests:
                logger.info(f"Resolved {sanitize_log_message(ref)} through mirror {mirror}")
                return digests
        return []

    async def _imagetools_digests(self, target: SSHTarget, ref: str) -> tuple[List[str], ExecResult]:
        result = await self.docker.run_with_retry(
            target, ["buildx", "imagetools", "inspect", ref, "--raw"]
        )
        if not result.ok and "unknown flag" in result.output.lower():
            result = await self.docker.run_with_retry(
                target, ["buildx", "imagetools", "inspect", ref]
            )
        if not result.ok:
            return [], result
        digest = extract_imagetools_digest(result.stdout)
        if not digest:
            return [], result
        if _is_manifest_list(result.stdout):
            return await self._config_behind(target, ref, digest)
        return [digest], result

    async def _skopeo_digest(
        self, target: SSHTarget, ref: str, platform: Platform
    ) -> tuple[Optional[str], ExecResult]:
        args = ["run", "--rm", SKOPEO_IMAGE, "inspect"]
        if platform.architecture and platform.architecture != "unknown":
            args += ["--override-arch", platform.architecture]
        if platform.os and platform.os != "unknown":
            args += ["--override-os", platform.os]
        args.append(f"docker://{ref}")
        result = await self.docker.run(target, args, timeout=180)
        if not result.ok:
            return None, result
        return extract_skopeo_digest(result.stdout), result
