"""Tests for the Vault backend against a mocked hvac client."""

from datetime import UTC, datetime
from unittest.mock import MagicMock

import pytest
import requests
from hvac.exceptions import (
    Forbidden,
    InvalidPath,
    InvalidRequest,
    RateLimitExceeded,
    VaultDown,
)

from secret_broker.secrets.config import VaultConfig
from secret_broker.secrets.protocol import (
    SecretNotFoundError,
    SecretsAccessError,
    SecretsConnectionError,
    SecretsError,
    SecretsRateLimitedError,
    SecretsUnavailableError,
    SecretVersionConflictError,
)
from secret_broker.secrets.vault import VaultBackend


def kv_response(data: dict, version: int) -> dict:
    return {"data": {"data": data, "metadata": {"version": version}}}


@pytest.fixture
def client() -> MagicMock:
    mock = MagicMock()
    mock.is_authenticated.return_value = True
    return mock


@pytest.fixture
def config() -> VaultConfig:
    return VaultConfig(
        url="https://vault.test:8200",
        token="s.test",
        dynamic_mounts=("database",),
        token_renewal_interval_seconds=3600,
    )


@pytest.fixture
async def vault(config: VaultConfig, client: MagicMock):
    backend = VaultBackend(config, client=client)
    await backend.connect()
    yield backend
    await backend.close()


class TestConnect:
    """Tests for connection and authentication."""

    async def test_connect_verifies_token(self, vault: VaultBackend, client: MagicMock) -> None:
        client.is_authenticated.assert_called_once()
        assert await vault.health_check() is True

    async def test_rejected_credentials(self, config: VaultConfig, client: MagicMock) -> None:
        client.is_authenticated.return_value = False
        backend = VaultBackend(config, client=client)

        with pytest.raises(SecretsAccessError):
            await backend.connect()

    async def test_unreachable_vault(self, config: VaultConfig, client: MagicMock) -> None:
        client.auth.approle.login.side_effect = requests.exceptions.ConnectionError("refused")
        backend = VaultBackend(
            VaultConfig(url=config.url, auth_method="approle", role_id="r", secret_id="s"),
            client=client,
        )

        with pytest.raises(SecretsConnectionError):
            await backend.connect()

    async def test_approle_login(self, client: MagicMock) -> None:
        backend = VaultBackend(
            VaultConfig(auth_method="approle", role_id="role", secret_id="secret"),
            client=client,
        )

        await backend.connect()
        await backend.close()

        client.auth.approle.login.assert_called_once_with(role_id="role", secret_id="secret")

    async def test_calls_before_connect_are_unavailable(
        self, config: VaultConfig, client: MagicMock
    ) -> None:
        backend = VaultBackend(config, client=client)

        with pytest.raises(SecretsUnavailableError):
            await backend.fetch("app/db")


class TestKeyValue:
    """Tests for KV v2 secrets."""

    async def test_fetch(self, vault: VaultBackend, client: MagicMock) -> None:
        client.secrets.kv.v2.read_secret_version.return_value = kv_response(
            {"password": "s3cret", "port": 5432}, 7
        )

        value = await vault.fetch("secret/app/db")

        assert value.data == {"password": "s3cret", "port": "5432"}
        assert value.version == 7
        assert value.lease_expiry is None
        client.secrets.kv.v2.read_secret_version.assert_called_once_with(
            path="app/db", mount_point="secret", raise_on_deleted_version=True
        )

    @pytest.mark.parametrize(
        ("error", "expected"),
        [
            (InvalidPath("missing"), SecretNotFoundError),
            (Forbidden("permission denied"), SecretsAccessError),
            (RateLimitExceeded("slow down"), SecretsRateLimitedError),
            (VaultDown("sealed"), SecretsUnavailableError),
            (requests.exceptions.ConnectTimeout("timeout"), SecretsUnavailableError),
        ],
    )
    async def test_error_mapping(
        self, vault: VaultBackend, client: MagicMock, error: Exception, expected: type
    ) -> None:
        client.secrets.kv.v2.read_secret_version.side_effect = error

        with pytest.raises(expected) as exc_info:
            await vault.fetch("app/db")

        assert exc_info.value.cause is error

    async def test_store_uses_check_and_set(self, vault: VaultBackend, client: MagicMock) -> None:
        client.secrets.kv.v2.create_or_update_secret.return_value = {"data": {"version": 4}}

        version = await vault.store("app/db", {"password": "x"}, expected_version=3)

        assert version == 4
        client.secrets.kv.v2.create_or_update_secret.assert_called_once_with(
            path="app/db", secret={"password": "x"}, cas=3, mount_point="secret"
        )

    async def test_store_conflict(self, vault: VaultBackend, client: MagicMock) -> None:
        client.secrets.kv.v2.create_or_update_secret.side_effect = InvalidRequest(
            "check-and-set parameter did not match the current version"
        )

        with pytest.raises(SecretVersionConflictError):
            await vault.store("app/db", {"password": "x"}, expected_version=1)

    async def test_delete_missing(self, vault: VaultBackend, client: MagicMock) -> None:
        client.secrets.kv.v2.read_secret_metadata.side_effect = InvalidPath()

        assert await vault.delete("app/db") is False
        client.secrets.kv.v2.delete_metadata_and_all_versions.assert_not_called()

    async def test_delete(self, vault: VaultBackend, client: MagicMock) -> None:
        assert await vault.delete("app/db") is True
        client.secrets.kv.v2.delete_metadata_and_all_versions.assert_called_once_with(
            path="app/db", mount_point="secret"
        )

    async def test_rotate_writes_against_read_version(
        self, vault: VaultBackend, client: MagicMock
    ) -> None:
        client.secrets.kv.v2.read_secret_version.return_value = kv_response(
            {"api_token": "old"}, 2
        )
        client.secrets.kv.v2.create_or_update_secret.return_value = {"data": {"version": 3}}

        rotated = await vault.rotate("app/api")

        assert rotated.version == 3
        assert rotated.data["api_token"] != "old"
        kwargs = client.secrets.kv.v2.create_or_update_secret.call_args.kwargs
        assert kwargs["cas"] == 2


class TestDynamic:
    """Tests for leased secrets on dynamic mounts."""

    async def test_fetch_carries_lease(self, vault: VaultBackend, client: MagicMock) -> None:
        client.read.return_value = {
            "lease_id": "database/creds/app/abc",
            "lease_duration": 3600,
            "data": {"username": "v-app", "password": "pw"},
        }
        before = datetime.now(UTC)

        value = await vault.fetch("database/creds/app")

        assert value.lease_id == "database/creds/app/abc"
        assert value.lease_expiry is not None
        assert (value.lease_expiry - before).total_seconds() == pytest.approx(3600, abs=5)
        client.read.assert_called_once_with("database/creds/app")

    async def test_fetch_missing_role(self, vault: VaultBackend, client: MagicMock) -> None:
        client.read.return_value = None

        with pytest.raises(SecretNotFoundError):
            await vault.fetch("database/creds/unknown")

    async def test_rotate_revokes_previous_lease(
        self, vault: VaultBackend, client: MagicMock
    ) -> None:
        client.read.side_effect = [
            {"lease_id": "lease-1", "lease_duration": 60, "data": {"password": "a"}},
            {"lease_id": "lease-2", "lease_duration": 60, "data": {"password": "b"}},
        ]
        await vault.fetch("database/creds/app")

        rotated = await vault.rotate("database/creds/app")

        assert rotated.lease_id == "lease-2"
        client.sys.revoke_lease.assert_called_once_with(lease_id="lease-1")

    async def test_tracked_leases_are_bounded(
        self, vault: VaultBackend, client: MagicMock, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        """Test only the most recently issued paths keep a lease for revocation."""
        monkeypatch.setattr("secret_broker.secrets.vault.MAX_TRACKED_LEASES", 2)
        for role in ("a", "b", "c"):
            client.read.return_value = {
                "lease_id": f"lease-{role}",
                "lease_duration": 60,
                "data": {"password": role},
            }
            await vault.fetch(f"database/creds/{role}")

        client.read.return_value = {
            "lease_id": "lease-a2",
            "lease_duration": 60,
            "data": {"password": "a2"},
        }
        await vault.rotate("database/creds/a")

        client.sys.revoke_lease.assert_not_called()

    async def test_writes_rejected(self, vault: VaultBackend) -> None:
        with pytest.raises(SecretsError):
            await vault.store("database/creds/app", {"password": "x"})
        with pytest.raises(SecretsError):
            await vault.delete("database/creds/app")
