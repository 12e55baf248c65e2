"""Container model for Docker containers discovered on hosts."""

from datetime import datetime
from typing import Any

from sqlalchemy import JSON, Boolean, DateTime, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql import func

from fleetdock.db import Base


class Container(Base):
    """Local record of a container on a host.

    Keyed logically by (host_id, container_id). The index is not unique:
    rows recorded under a short ID and under the full ID can coexist until
    the duplicate cleanup merges them.
    """

    __tablename__ = "containers"
    __table_args__ = (
        Index("idx_container_host_container_id", "host_id", "container_id"),
        Index("idx_container_compose_group", "compose_group_key"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    host_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("hosts.id", ondelete="CASCADE"), nullable=False, index=True
    )
    container_id: Mapped[str] = mapped_column(String, nullable=False)
    name: Mapped[str] = mapped_column(String, nullable=False, index=True)

    # running, exited, stopped, paused, dead, restarting, created
    state: Mapped[str | None] = mapped_column(String, nullable=True)
    status: Mapped[str | None] = mapped_column(String, nullable=True)  # "Up 3 hours"

    # Image
    image_name: Mapped[str | None] = mapped_column(String, nullable=True)
    image_tag: Mapped[str | None] = mapped_column(String, nullable=True)
    repo_digest: Mapped[str | None] = mapped_column(String, nullable=True)
    repo_digests: Mapped[list[Any]] = mapped_column(JSON, default=list)
    remote_digest: Mapped[str | None] = mapped_column(String, nullable=True)
    update_available: Mapped[bool] = mapped_column(Boolean, default=False, index=True)
    update_checked_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    platform_arch: Mapped[str | None] = mapped_column(String, nullable=True)
    platform_os: Mapped[str | None] = mapped_column(String, nullable=True)

    restart_count: Mapped[int] = mapped_column(Integer, default=0)
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    # Inspect blobs
    ports: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict)
    mounts: Mapped[list[Any]] = mapped_column(JSON, default=list)
    networks: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict)
    labels: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict)

    # Compose metadata (from labels only)
    is_compose_managed: Mapped[bool] = mapped_column(Boolean, default=False, index=True)
    compose_project: Mapped[str | None] = mapped_column(String, nullable=True)
    compose_service: Mapped[str | None] = mapped_column(String, nullable=True)
    compose_working_dir: Mapped[str | None] = mapped_column(String, nullable=True)
    compose_folder_name: Mapped[str | None] = mapped_column(String, nullable=True)
    compose_config_files: Mapped[list[Any]] = mapped_column(JSON, default=list)
    compose_group_key: Mapped[str | None] = mapped_column(String, nullable=True)

    # docker run invocation that recreates a CLI container
    run_command: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    def __repr__(self) -> str:
        return f"<Container(id={self.id}, host_id={self.host_id}, name={self.name})>"
