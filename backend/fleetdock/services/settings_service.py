"""Settings service for database-first configuration."""

import logging
from typing import Any, Dict, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from fleetdock.models import Setting
from fleetdock.utils.encryption import get_encryption_service, is_encryption_configured
from fleetdock.utils.security import sanitize_log_message

logger = logging.getLogger(__name__)

DEFAULT_REGISTRY_MIRRORS = "mirror.gcr.io,registry.dockermirror.com,dockerproxy.net"


class SettingsService:
    """Manage tunables in the database.

    Values are read fresh on every call; nothing is cached so that a change
    made while a task is running applies to the next command it issues.
    """

    DEFAULTS: Dict[str, Dict[str, Any]] = {
        # SSH / task runner
        "ssh_concurrency": {
            "value": "30",
            "category": "ssh",
            "description": "Maximum number of hosts a task runs on concurrently (10-100)",
        },
        "command_timeout_seconds": {
            "value": "100",
            "category": "ssh",
            "description": "Hard kill timeout for a single remote command in seconds (10-900)",
        },
        # Scheduling
        "container_update_check_enabled": {
            "value": "true",
            "category": "scheduling",
            "description": "Enable the scheduled container update check",
        },
        "container_update_check_cron": {
            "value": "45 0 * * *",
            "category": "scheduling",
            "description": "Cron expression for the container update check of all hosts",
        },
        "duplicate_cleanup_interval_minutes": {
            "value": "10",
            "category": "scheduling",
            "description": "Interval for the duplicate container record cleanup (0 disables)",
        },
        "running_status_refresh_interval_minutes": {
            "value": "5",
            "category": "scheduling",
            "description": "Interval for refreshing containers recorded as running (0 disables)",
        },
        # Docker proxy
        "docker_proxy_enabled": {
            "value": "false",
            "category": "docker",
            "description": "Inject proxy environment into docker commands that reach a registry",
        },
        "docker_http_proxy": {
            "value": "",
            "category": "docker",
            "description": "HTTP_PROXY value for registry commands",
        },
        "docker_https_proxy": {
            "value": "",
            "category": "docker",
            "description": "HTTPS_PROXY value for registry commands",
        },
        "docker_no_proxy": {
            "value": "",
            "category": "docker",
            "description": "NO_PROXY value for registry commands",
        },
        "docker_proxy_local_only": {
            "value": "false",
            "category": "docker",
            "description": "Only inject proxy environment on local hosts (role local or tagged)",
        },
        "docker_proxy_local_tag": {
            "value": "local",
            "category": "docker",
            "description": "Host tag that marks a host as local for the proxy policy",
        },
        # Registry
        "docker_registry_login_enabled": {
            "value": "false",
            "category": "registry",
            "description": "Run docker login before registry commands",
        },
        "docker_registry_server": {
            "value": "",
            "category": "registry",
            "description": "Registry server for docker login (empty for Docker Hub)",
        },
        "docker_registry_username": {
            "value": "",
            "category": "registry",
            "description": "Registry username",
        },
        "docker_registry_password": {
            "value": "",
            "category": "registry",
            "description": "Registry password or access token (encrypted)",
            "encrypted": True,
        },
        "registry_mirrors": {
            "value": DEFAULT_REGISTRY_MIRRORS,
            "category": "registry",
            "description": "Comma-separated Docker Hub mirrors used when rate limited",
        },
    }

    @staticmethod
    async def init_defaults(db: AsyncSession) -> None:
        """Initialize default settings if they don't exist."""
        for key, config in SettingsService.DEFAULTS.items():
            result = await db.execute(select(Setting).where(Setting.key == key))
            if not result.scalar_one_or_none():
                setting = Setting(
                    key=key,
                    value=config["value"],
                    category=config["category"],
                    description=config["description"],
                    encrypted=config.get("encrypted", False),
                )
                db.add(setting)

        await db.commit()

    @classmethod
    async def get(cls, db: AsyncSession, key: str, default: Optional[str] = None) -> Optional[str]:
        """Get setting value by key.

        Automatically decrypts encrypted settings if encryption is configured.

        Args:
            db: Database session
            key: Setting key
            default: Default value if setting not found

        Returns:
            Decrypted setting value or default
        """
        result = await db.execute(select(Setting).where(Setting.key == key))
        setting = result.scalar_one_or_none()

        if not setting:
            return default

        if setting.encrypted and is_encryption_configured():
            try:
                return get_encryption_service().decrypt(setting.value)
            except ValueError as e:
                logger.error(
                    f"Failed to decrypt setting '{sanitize_log_message(key)}': "
                    f"{sanitize_log_message(str(e))}"
                )
                return None

        return setting.value

    @staticmethod
    async def get_bool(db: AsyncSession, key: str, default: bool = False) -> bool:
        """Get setting as boolean."""
        value = await SettingsService.get(db, key)
        if value is None:
            return default
        return value.lower() in ("true", "1", "yes", "on")

    @staticmethod
    async def get_int(db: AsyncSession, key: str, default: int = 0) -> int:
        """Get setting as integer."""
        value = await SettingsService.get(db, key)
        if value is None:
            return default
        try:
            return int(value)
        except ValueError:
            return default

    @staticmethod
    async def get_int_clamped(
        db: AsyncSession, key: str, default: int, minimum: int, maximum: int
    ) -> int:
        """Get setting as integer bounded to [minimum, maximum]."""
        value = await SettingsService.get_int(db, key, default)
        return max(minimum, min(maximum, value))

    @staticmethod
    async def get_list(db: AsyncSession, key: str) -> list[str]:
        """Get a comma-separated setting as a list of stripped, non-empty items."""
        value = await SettingsService.get(db, key, "") or ""
        return [item.strip() for item in value.split(",") if item.strip()]

    @classmethod
    async def set(cls, db: AsyncSession, key: str, value: str) -> Setting:
        """Set setting value, encrypting keys marked as encrypted.

        Raises:
            ValueError: If encryption is expected but fails
        """
        result = await db.execute(select(Setting).where(Setting.key == key))
        setting = result.scalar_one_or_none()

        config = cls.DEFAULTS.get(key, {})
        is_encrypted = config.get("encrypted", False)

        value_to_store = value
        if is_encrypted and value and is_encryption_configured():
            value_to_store = get_encryption_service().encrypt(value)
            logger.debug(f"Encrypted setting '{sanitize_log_message(key)}' before storing")
        elif is_encrypted and value:
            logger.warning(
                f"Setting '{key}' is marked as encrypted but FLEETDOCK_ENCRYPTION_KEY is not "
                "configured. Value will be stored in plain text."
            )

        if setting:
            setting.value = value_to_store
            setting.encrypted = is_encrypted
        else:
            setting = Setting(
                key=key,
                value=value_to_store,
                category=config.get("category", "general"),
                description=config.get("description", ""),
                encrypted=is_encrypted,
            )
            db.add(setting)

        await db.commit()
        await db.refresh(setting)
        return setting

    @staticmethod
    async def get_all(db: AsyncSession, category: Optional[str] = None) -> list[Setting]:
        """Get all settings, optionally filtered by category."""
        query = select(Setting)
        if category:
            query = query.where(Setting.category == category)
        result = await db.execute(query.order_by(Setting.category, Setting.key))
        return list(result.scalars().all())
