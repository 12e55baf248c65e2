"""Host model for operator-declared Docker hosts."""

from datetime import datetime
from typing import Any

from sqlalchemy import JSON, DateTime, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql import func

from fleetdock.db import Base


class Host(Base):
    """A Docker host reachable over SSH (or locally for loopback addresses).

    Credentials are stored in the ``v1:`` encrypted envelope and are only
    decrypted right before a command is executed.
    """

    __tablename__ = "hosts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String, nullable=False, index=True)
    address: Mapped[str] = mapped_column(String, nullable=False)
    ssh_user: Mapped[str] = mapped_column(String, nullable=False, default="root")
    port: Mapped[int] = mapped_column(Integer, nullable=False, default=22)

    # password or key
    auth_method: Mapped[str] = mapped_column(String, nullable=False, default="key")
    ssh_password: Mapped[str | None] = mapped_column(Text, nullable=True)
    ssh_private_key: Mapped[str | None] = mapped_column(Text, nullable=True)
    ssh_private_key_passphrase: Mapped[str | None] = mapped_column(Text, nullable=True)

    tags: Mapped[list[Any]] = mapped_column(JSON, default=list)
    # local or remote
    role: Mapped[str] = mapped_column(String, nullable=False, default="remote")

    created_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    def __repr__(self) -> str:
        return f"<Host(id={self.id}, name={self.name}, address={self.address})>"
