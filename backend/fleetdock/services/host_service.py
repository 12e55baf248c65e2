"""Host lookup, credential decryption and connection testing."""

import logging
from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import async_sessionmaker

from fleetdock.exceptions import CredentialError, HostNotFoundError
from fleetdock.models.host import Host
from fleetdock.services.ssh_executor import (
    ExecOptions,
    HostCredentials,
    RemoteExecutor,
    SSHTarget,
)
from fleetdock.utils.encryption import EncryptionService
from fleetdock.utils.security import sanitize_log_message

logger = logging.getLogger(__name__)

CONNECTION_TEST_TIMEOUT = 10


class HostService:
    """Read-only access to hosts; turns a host row into an executor target."""

    def __init__(
        self,
        session_factory: async_sessionmaker,
        executor: RemoteExecutor,
        encryption: Optional[EncryptionService] = None,
    ):
        self.session_factory = session_factory
        self.executor = executor
        self.encryption = encryption

    async def get_host(self, host_id: int) -> Host:
        async with self.session_factory() as db:
            host = await db.get(Host, host_id)
        if host is None:
            raise HostNotFoundError(host_id)
        return host

    async def list_hosts(self, host_ids: Optional[List[int]] = None) -> List[Host]:
        async with self.session_factory() as db:
            query = select(Host).order_by(Host.id)
            if host_ids is not None:
                query = query.where(Host.id.in_(host_ids))
            result = await db.execute(query)
            return list(result.scalars().all())

    def _decrypt(self, value: Optional[str], field_name: str, host: Host) -> Optional[str]:
        if not value:
            return None
        if not EncryptionService.is_encrypted(value):
            return value
        if self.encryption is None:
            raise CredentialError(
                f"Host {host.id} has encrypted {field_name} but no encryption key is configured"
            )
        plaintext = self.encryption.decrypt(value)
        if plaintext is None:
            raise CredentialError(f"Could not decrypt {field_name} of host {host.id}")
        return plaintext

    def build_target(self, host: Host) -> SSHTarget:
        """Decrypt the credentials of the host's auth method into an SSH target.

        Raises:
            CredentialError: If stored credentials cannot be decrypted
        """
        target = SSHTarget(
            address=host.address,
            user=host.ssh_user or "root",
            port=host.port or 22,
            host_id=host.id,
            tags=list(host.tags or []),
            role=host.role or "remote",
        )
        if target.is_loopback:
            return target

        if host.auth_method == "password":
            target.credentials = HostCredentials(
                password=self._decrypt(host.ssh_password, "password", host)
            )
        else:
            target.credentials = HostCredentials(
                private_key=self._decrypt(host.ssh_private_key, "private key", host),
                passphrase=self._decrypt(
                    host.ssh_private_key_passphrase, "key passphrase", host
                ),
            )
        return target

    async def get_target(self, host_id: int) -> SSHTarget:
        return self.build_target(await self.get_host(host_id))

    async def test_connection(self, host_id: int) -> Dict[str, Any]:
        """Run ``echo ok`` on a host with relaxed host-key checking.

        Returns:
            ``{"ok": bool, "reason"?: str, "output"?: str}``
        """
        host = await self.get_host(host_id)
        try:
            target = self.build_target(host)
        except CredentialError as e:
            return {"ok": False, "reason": str(e)}

        result = await self.executor.execute(
            target,
            "echo ok",
            ExecOptions(
                connect_timeout=CONNECTION_TEST_TIMEOUT,
                kill_after=CONNECTION_TEST_TIMEOUT,
                host_key_checking="accept-new",
            ),
        )
        if result.ok and result.stdout.strip() == "ok":
            logger.info(f"Connection test to {sanitize_log_message(host.name)} succeeded")
            return {"ok": True, "output": result.stdout.strip()}

        if result.timed_out:
            reason = "connection timed out"
        else:
            reason = result.transport_error or result.stderr.strip() or f"exit code {result.exit_code}"
        logger.warning(
            f"Connection test to {sanitize_log_message(host.name)} failed: "
            f"{sanitize_log_message(reason)}"
        )
        return {"ok": False, "reason": reason}
