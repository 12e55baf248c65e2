"""Typed structures for docker CLI JSON output.

``docker inspect``, ``docker image inspect``, ``docker compose ls`` and
``docker manifest inspect`` all emit loosely-typed JSON. These models are
validated at the parse boundary; every field is optional with a documented
default so that partial or version-specific output still parses.
"""

import json
import logging
import re
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from fleetdock.exceptions import DockerOutputParseError

logger = logging.getLogger(__name__)


def _none_as_empty_list(value: Any) -> Any:
    # docker emits null rather than empty collections
    return [] if value is None else value


def _none_as_empty_dict(value: Any) -> Any:
    return {} if value is None else value


class DockerModel(BaseModel):
    """Base for docker JSON records: Docker's CamelCase keys map to snake_case fields."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class ContainerStateInfo(DockerModel):
    status: Optional[str] = Field(None, alias="Status")
    running: bool = Field(False, alias="Running")
    paused: bool = Field(False, alias="Paused")
    restarting: bool = Field(False, alias="Restarting")
    dead: bool = Field(False, alias="Dead")
    started_at: Optional[str] = Field(None, alias="StartedAt")

    def normalized(self) -> str:
        """Prefer ``Status``; otherwise derive from the booleans, defaulting to stopped."""
        if self.status:
            return self.status
        if self.running:
            return "running"
        if self.paused:
            return "paused"
        if self.dead:
            return "dead"
        return "stopped"


class ContainerConfigInfo(DockerModel):
    image: Optional[str] = Field(None, alias="Image")
    env: List[str] = Field(default_factory=list, alias="Env")
    cmd: Optional[List[str]] = Field(None, alias="Cmd")
    entrypoint: Optional[List[str]] = Field(None, alias="Entrypoint")
    working_dir: Optional[str] = Field(None, alias="WorkingDir")
    user: Optional[str] = Field(None, alias="User")
    labels: Dict[str, str] = Field(default_factory=dict, alias="Labels")

    @field_validator("env", mode="before")
    @classmethod
    def env_null_as_empty(cls, value: Any) -> Any:
        return _none_as_empty_list(value)

    @field_validator("labels", mode="before")
    @classmethod
    def labels_null_as_empty(cls, value: Any) -> Any:
        return _none_as_empty_dict(value)


class RestartPolicy(DockerModel):
    name: str = Field("", alias="Name")
    maximum_retry_count: int = Field(0, alias="MaximumRetryCount")


class PortBinding(DockerModel):
    host_ip: str = Field("", alias="HostIp")
    host_port: str = Field("", alias="HostPort")


class HostConfigInfo(DockerModel):
    restart_policy: Optional[RestartPolicy] = Field(None, alias="RestartPolicy")
    port_bindings: Optional[Dict[str, Optional[List[PortBinding]]]] = Field(
        None, alias="PortBindings"
    )
    network_mode: Optional[str] = Field(None, alias="NetworkMode")


class MountPoint(DockerModel):
    type: Optional[str] = Field(None, alias="Type")
    name: Optional[str] = Field(None, alias="Name")
    source: Optional[str] = Field(None, alias="Source")
    destination: Optional[str] = Field(None, alias="Destination")
    rw: bool = Field(True, alias="RW")


class NetworkSettingsInfo(DockerModel):
    networks: Dict[str, Any] = Field(default_factory=dict, alias="Networks")
    ports: Dict[str, Any] = Field(default_factory=dict, alias="Ports")

    @field_validator("networks", "ports", mode="before")
    @classmethod
    def null_as_empty(cls, value: Any) -> Any:
        return _none_as_empty_dict(value)


class ContainerInspect(DockerModel):
    """One element of ``docker inspect <container>`` output."""

    id: str = Field(alias="Id")
    name: str = Field("", alias="Name")
    image: Optional[str] = Field(None, alias="Image")
    created: Optional[str] = Field(None, alias="Created")
    restart_count: int = Field(0, alias="RestartCount")
    state: ContainerStateInfo = Field(default_factory=ContainerStateInfo, alias="State")
    config: ContainerConfigInfo = Field(default_factory=ContainerConfigInfo, alias="Config")
    host_config: HostConfigInfo = Field(default_factory=HostConfigInfo, alias="HostConfig")
    mounts: List[MountPoint] = Field(default_factory=list, alias="Mounts")
    network_settings: NetworkSettingsInfo = Field(
        default_factory=NetworkSettingsInfo, alias="NetworkSettings"
    )

    @property
    def short_id(self) -> str:
        return self.id[:12]

    @property
    def bare_name(self) -> str:
        """Container name without docker's leading slash."""
        return self.name.lstrip("/")


class ImageInspect(DockerModel):
    """One element of ``docker image inspect`` output."""

    id: str = Field("", alias="Id")
    repo_tags: List[str] = Field(default_factory=list, alias="RepoTags")
    repo_digests: List[str] = Field(default_factory=list, alias="RepoDigests")
    architecture: Optional[str] = Field(None, alias="Architecture")
    os: Optional[str] = Field(None, alias="Os")

    @field_validator("repo_tags", "repo_digests", mode="before")
    @classmethod
    def null_as_empty(cls, value: Any) -> Any:
        return _none_as_empty_list(value)


class ComposeProject(DockerModel):
    """One project in ``docker compose ls`` output."""

    name: str = Field(alias="Name")
    status: str = Field("", alias="Status")
    config_files: str = Field("", alias="ConfigFiles")

    @property
    def is_running(self) -> bool:
        status = self.status.lower()
        return "running" in status or "up" in status


class Platform(DockerModel):
    architecture: str = "unknown"
    os: str = "unknown"
    variant: Optional[str] = None

    @property
    def is_known(self) -> bool:
        return self.architecture != "unknown" and self.os != "unknown"


class ManifestEntry(DockerModel):
    digest: Optional[str] = None
    media_type: Optional[str] = Field(None, alias="mediaType")
    platform: Optional[Platform] = None


class ManifestConfig(DockerModel):
    digest: Optional[str] = None
    media_type: Optional[str] = Field(None, alias="mediaType")


class ManifestDocument(DockerModel):
    """Output of ``docker manifest inspect`` or ``buildx imagetools inspect --raw``.

    A manifest list carries ``manifests``; a single image manifest carries
    ``config``. Some tools also emit a top-level ``digest``.
    """

    schema_version: Optional[int] = Field(None, alias="schemaVersion")
    media_type: Optional[str] = Field(None, alias="mediaType")
    manifests: Optional[List[ManifestEntry]] = None
    config: Optional[ManifestConfig] = None
    digest: Optional[str] = None

    @property
    def is_list(self) -> bool:
        return bool(self.manifests)


def _load_json(text: str, what: str) -> Any:
    try:
        return json.loads(text)
    except json.JSONDecodeError as e:
        raise DockerOutputParseError(f"Invalid JSON from {what}: {e}") from e


def parse_container_inspect(text: str) -> List[ContainerInspect]:
    """Parse ``docker inspect`` output (a JSON array) into records.

    Raises:
        DockerOutputParseError: If the output is not valid inspect JSON
    """
    data = _load_json(text, "docker inspect")
    if isinstance(data, dict):
        data = [data]
    if not isinstance(data, list):
        raise DockerOutputParseError("docker inspect output is not a list")
    try:
        return [ContainerInspect.model_validate(item) for item in data]
    except ValidationError as e:
        raise DockerOutputParseError(f"Unexpected docker inspect shape: {e}") from e


def parse_image_inspect(text: str) -> Optional[ImageInspect]:
    """Parse ``docker image inspect`` output, returning the first image or None."""
    data = _load_json(text, "docker image inspect")
    if isinstance(data, list):
        if not data:
            return None
        data = data[0]
    try:
        return ImageInspect.model_validate(data)
    except ValidationError as e:
        raise DockerOutputParseError(f"Unexpected image inspect shape: {e}") from e


def parse_manifest(text: str) -> ManifestDocument:
    """Parse a manifest or manifest list.

    Raises:
        DockerOutputParseError: If the output is not a JSON object
    """
    data = _load_json(text, "manifest inspect")
    if not isinstance(data, dict):
        raise DockerOutputParseError("Manifest output is not an object")
    try:
        return ManifestDocument.model_validate(data)
    except ValidationError as e:
        raise DockerOutputParseError(f"Unexpected manifest shape: {e}") from e


def parse_compose_ls(text: str) -> List[ComposeProject]:
    """Parse ``docker compose ls`` output.

    Tries, in order: a JSON array, one JSON object per line, and the plain
    table format (columns separated by two or more spaces, first line a
    header). Unparseable lines are skipped.
    """
    stripped = text.strip()
    if not stripped:
        return []

    try:
        data = json.loads(stripped)
        if isinstance(data, dict):
            data = [data]
        if isinstance(data, list):
            return _validate_projects(data)
    except json.JSONDecodeError:
        pass

    line_items = []
    for line in stripped.splitlines():
        line = line.strip()
        if not line.startswith("{"):
            continue
        try:
            line_items.append(json.loads(line))
        except json.JSONDecodeError:
            logger.debug(f"Skipping unparseable compose ls line: {line[:80]}")
    if line_items:
        return _validate_projects(line_items)

    projects = []
    for line in stripped.splitlines()[1:]:
        columns = re.split(r"\s{2,}", line.strip())
        if not columns or not columns[0]:
            continue
        projects.append(
            ComposeProject(
                name=columns[0],
                status=columns[1] if len(columns) > 1 else "",
                config_files=columns[2] if len(columns) > 2 else "",
            )
        )
    return projects


def _validate_projects(items: List[Any]) -> List[ComposeProject]:
    projects = []
    for item in items:
        try:
            projects.append(ComposeProject.model_validate(item))
        except ValidationError:
            logger.debug("Skipping compose ls entry without a Name")
    return projects
