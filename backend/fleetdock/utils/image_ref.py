"""Helpers for Docker image references and digests."""

import re
from typing import Iterable, Optional

DOCKER_HUB_HOSTS = ("docker.io", "registry-1.docker.io", "index.docker.io")

_DIGEST_RE = re.compile(r"^(?:sha256:)?([0-9a-f]{64})$")


def strip_digest(ref: str) -> str:
    """Drop an ``@sha256:...`` suffix from a reference."""
    return ref.split("@", 1)[0]


def split_image_ref(ref: str) -> tuple[str, str]:
    """Split ``[registry/]repo[:tag][@digest]`` into (name, tag).

    The tag separator is the last ``:`` after the last ``/`` so that registry
    ports (``registry:5000/app``) are not mistaken for tags.

    Examples:
        >>> split_image_ref("nginx")
        ('nginx', 'latest')
        >>> split_image_ref("registry:5000/team/app:1.2@sha256:abc")
        ('registry:5000/team/app', '1.2')
    """
    ref = strip_digest(ref.strip())
    last_slash = ref.rfind("/")
    last_colon = ref.rfind(":")
    if last_colon > last_slash:
        return ref[:last_colon], ref[last_colon + 1:] or "latest"
    return ref, "latest"


def resolve_image_name_tag(repo_tags: Iterable[str], config_image: Optional[str]) -> tuple[str, str]:
    """Pick a human image name/tag for a container.

    Prefers an image ``RepoTag`` (``name:tag``) over the container's configured
    image, which may be a raw ``sha256:`` reference or an ``image@digest`` pin.
    """
    for tag in repo_tags or []:
        if tag and ":" in tag and not tag.startswith("sha256:") and tag != "<none>:<none>":
            return split_image_ref(tag)
    if config_image and not config_image.startswith("sha256:"):
        return split_image_ref(config_image)
    return (config_image or "unknown"), "latest"


def is_docker_hub_image(ref: str) -> bool:
    """Whether a reference points at Docker Hub.

    True for bare names (``nginx``), explicit Docker Hub hosts, and
    ``user/image`` forms whose first segment is not a registry host.
    """
    name, _ = split_image_ref(ref)
    parts = name.split("/")
    if len(parts) == 1:
        return True
    first = parts[0]
    if first in DOCKER_HUB_HOSTS:
        return True
    if "." in first or ":" in first or first == "localhost":
        return False
    return len(parts) == 2


def docker_hub_path(ref: str) -> str:
    """Repository path on Docker Hub including the implicit ``library/`` namespace."""
    name, tag = split_image_ref(ref)
    for host in DOCKER_HUB_HOSTS:
        if name.startswith(f"{host}/"):
            name = name[len(host) + 1:]
            break
    if "/" not in name:
        name = f"library/{name}"
    return f"{name}:{tag}"


def to_mirror_ref(ref: str, mirror: str) -> str:
    """Rewrite a Docker Hub reference against a mirror registry.

    Examples:
        >>> to_mirror_ref("nginx:1.25", "mirror.gcr.io")
        'mirror.gcr.io/library/nginx:1.25'
    """
    mirror = mirror.strip().rstrip("/")
    for prefix in ("https://", "http://"):
        if mirror.startswith(prefix):
            mirror = mirror[len(prefix):]
    return f"{mirror}/{docker_hub_path(ref)}"


def normalize_digest(value: Optional[str]) -> Optional[str]:
    """Normalize a digest to lowercase ``sha256:<hex>``.

    Accepts ``repo@sha256:...`` (a RepoDigests entry), a bare 64-char hex
    string or an already normalized digest. Returns None for anything else,
    including short image IDs which cannot be compared to registry digests.
    """
    if not value:
        return None
    candidate = value.strip().lower()
    if "@" in candidate:
        candidate = candidate.rsplit("@", 1)[1]
    match = _DIGEST_RE.match(candidate)
    if not match:
        return None
    return f"sha256:{match.group(1)}"


def digest_set(values: Iterable[Optional[str]]) -> set[str]:
    """Normalized, non-empty digests from mixed sources."""
    return {d for d in (normalize_digest(v) for v in values) if d}
