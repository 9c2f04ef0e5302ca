"""Tests for the AWS Secrets Manager backend against a mocked boto3 client."""

import json
from datetime import UTC, datetime
from unittest.mock import MagicMock

import pytest
from botocore.exceptions import ClientError, EndpointConnectionError, NoCredentialsError

from secret_broker.secrets.aws import AWSSecretsManagerBackend
from secret_broker.secrets.config import AWSSecretsConfig
from secret_broker.secrets.protocol import (
    SecretNotFoundError,
    SecretsAccessError,
    SecretsRateLimitedError,
    SecretsUnavailableError,
    SecretVersionConflictError,
)

CREATED = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)
CREATED_MS = int(CREATED.timestamp() * 1000)


def client_error(code: str, operation: str = "GetSecretValue") -> ClientError:
    return ClientError({"Error": {"Code": code, "Message": code}}, operation)


def secret_response(data: dict | str, created: datetime = CREATED, version_id: str = "v1") -> dict:
    secret_string = data if isinstance(data, str) else json.dumps(data)
    return {"SecretString": secret_string, "CreatedDate": created, "VersionId": version_id}


@pytest.fixture
def client() -> MagicMock:
    return MagicMock()


@pytest.fixture
def aws(client: MagicMock) -> AWSSecretsManagerBackend:
    return AWSSecretsManagerBackend(AWSSecretsConfig(region="eu-west-1"), client=client)


class TestFetch:
    """Tests for reads and error mapping."""

    async def test_json_secret(self, aws: AWSSecretsManagerBackend, client: MagicMock) -> None:
        client.get_secret_value.return_value = secret_response({"username": "app", "port": 5432})

        value = await aws.fetch("app/db")

        assert value.data == {"username": "app", "port": "5432"}
        assert value.version == CREATED_MS
        assert value.backend == "aws"
        client.get_secret_value.assert_called_once_with(SecretId="app/db")

    async def test_plain_string_secret(
        self, aws: AWSSecretsManagerBackend, client: MagicMock
    ) -> None:
        client.get_secret_value.return_value = secret_response("not-json")

        value = await aws.fetch("app/token")

        assert value.data == {"value": "not-json"}

    async def test_binary_secret(self, aws: AWSSecretsManagerBackend, client: MagicMock) -> None:
        client.get_secret_value.return_value = {
            "SecretBinary": b"\x00\x01",
            "CreatedDate": CREATED,
        }

        value = await aws.fetch("app/cert")

        assert value.data == {"value": "AAE="}

    @pytest.mark.parametrize(
        ("code", "expected"),
        [
            ("ResourceNotFoundException", SecretNotFoundError),
            ("AccessDeniedException", SecretsAccessError),
            ("ThrottlingException", SecretsRateLimitedError),
            ("InternalServiceError", SecretsUnavailableError),
        ],
    )
    async def test_client_error_mapping(
        self, aws: AWSSecretsManagerBackend, client: MagicMock, code: str, expected: type
    ) -> None:
        client.get_secret_value.side_effect = client_error(code)

        with pytest.raises(expected):
            await aws.fetch("app/db")

    async def test_missing_credentials(
        self, aws: AWSSecretsManagerBackend, client: MagicMock
    ) -> None:
        client.get_secret_value.side_effect = NoCredentialsError()

        with pytest.raises(SecretsAccessError):
            await aws.fetch("app/db")

    async def test_endpoint_unreachable(
        self, aws: AWSSecretsManagerBackend, client: MagicMock
    ) -> None:
        client.get_secret_value.side_effect = EndpointConnectionError(endpoint_url="https://x")

        with pytest.raises(SecretsUnavailableError):
            await aws.fetch("app/db")

    async def test_not_connected(self) -> None:
        backend = AWSSecretsManagerBackend(AWSSecretsConfig())

        with pytest.raises(SecretsUnavailableError):
            await backend.fetch("app/db")
        assert await backend.health_check() is False


class TestStore:
    """Tests for writes."""

    async def test_create_new_secret(
        self, aws: AWSSecretsManagerBackend, client: MagicMock
    ) -> None:
        client.get_secret_value.side_effect = [
            client_error("ResourceNotFoundException"),
            secret_response({"password": "x"}, version_id="v1"),
        ]
        client.create_secret.return_value = {"VersionId": "v1"}

        version = await aws.store("app/db", {"password": "x"}, expected_version=0)

        assert version == CREATED_MS
        client.create_secret.assert_called_once_with(
            Name="app/db", SecretString=json.dumps({"password": "x"})
        )
        client.get_secret_value.assert_called_with(SecretId="app/db", VersionId="v1")

    async def test_update_existing_secret(
        self, aws: AWSSecretsManagerBackend, client: MagicMock
    ) -> None:
        later = datetime(2026, 3, 2, tzinfo=UTC)
        client.get_secret_value.side_effect = [
            secret_response({"password": "old"}),
            secret_response({"password": "new"}, created=later, version_id="v2"),
        ]
        client.put_secret_value.return_value = {"VersionId": "v2"}

        version = await aws.store("app/db", {"password": "new"}, expected_version=CREATED_MS)

        assert version == int(later.timestamp() * 1000)
        client.create_secret.assert_not_called()

    async def test_stale_expected_version(
        self, aws: AWSSecretsManagerBackend, client: MagicMock
    ) -> None:
        client.get_secret_value.return_value = secret_response({"password": "old"})

        with pytest.raises(SecretVersionConflictError) as exc_info:
            await aws.store("app/db", {"password": "new"}, expected_version=1)

        assert exc_info.value.current_version == CREATED_MS
        client.put_secret_value.assert_not_called()

    async def test_create_race(self, aws: AWSSecretsManagerBackend, client: MagicMock) -> None:
        """Test a concurrent creator surfaces as a conflict."""
        client.get_secret_value.side_effect = client_error("ResourceNotFoundException")
        client.create_secret.side_effect = client_error("ResourceExistsException", "CreateSecret")

        with pytest.raises(SecretVersionConflictError):
            await aws.store("app/db", {"password": "x"})

    async def test_kms_key_on_create(self, client: MagicMock) -> None:
        aws = AWSSecretsManagerBackend(AWSSecretsConfig(kms_key_id="alias/broker"), client=client)
        client.get_secret_value.side_effect = [
            client_error("ResourceNotFoundException"),
            secret_response({"password": "x"}),
        ]
        client.create_secret.return_value = {"VersionId": "v1"}

        await aws.store("app/db", {"password": "x"})

        assert client.create_secret.call_args.kwargs["KmsKeyId"] == "alias/broker"


class TestDeleteAndRotate:
    """Tests for deletes and rotations."""

    async def test_delete(self, aws: AWSSecretsManagerBackend, client: MagicMock) -> None:
        assert await aws.delete("app/db") is True
        client.delete_secret.assert_called_once_with(
            SecretId="app/db", ForceDeleteWithoutRecovery=True
        )

    async def test_delete_missing(self, aws: AWSSecretsManagerBackend, client: MagicMock) -> None:
        client.delete_secret.side_effect = client_error(
            "ResourceNotFoundException", "DeleteSecret"
        )

        assert await aws.delete("app/db") is False

    async def test_rotate_with_lambda(self, client: MagicMock) -> None:
        """Test the rotated value is read only after the Lambda promotes it."""
        aws = AWSSecretsManagerBackend(
            AWSSecretsConfig(
                rotation_lambda_arn="arn:aws:lambda:eu-west-1:1:function:rot",
                rotation_poll_interval_seconds=0.0,
            ),
            client=client,
        )
        client.rotate_secret.return_value = {"VersionId": "v2"}
        client.describe_secret.side_effect = [
            {"VersionIdsToStages": {"v1": ["AWSCURRENT"], "v2": ["AWSPENDING"]}},
            {"VersionIdsToStages": {"v1": ["AWSPREVIOUS"], "v2": ["AWSCURRENT"]}},
        ]
        later = datetime(2026, 3, 2, tzinfo=UTC)
        client.get_secret_value.return_value = secret_response(
            {"password": "rotated"}, created=later, version_id="v2"
        )

        value = await aws.rotate("app/db")

        assert value.data == {"password": "rotated"}
        assert value.version == int(later.timestamp() * 1000)
        client.rotate_secret.assert_called_once_with(
            SecretId="app/db",
            RotationLambdaARN="arn:aws:lambda:eu-west-1:1:function:rot",
            RotateImmediately=True,
        )
        assert client.describe_secret.call_count == 2
        client.get_secret_value.assert_called_once_with(SecretId="app/db", VersionId="v2")

    async def test_rotate_with_lambda_still_pending(self, client: MagicMock) -> None:
        aws = AWSSecretsManagerBackend(
            AWSSecretsConfig(
                rotation_lambda_arn="arn:aws:lambda:eu-west-1:1:function:rot",
                rotation_poll_attempts=3,
                rotation_poll_interval_seconds=0.0,
            ),
            client=client,
        )
        client.rotate_secret.return_value = {"VersionId": "v2"}
        client.describe_secret.return_value = {
            "VersionIdsToStages": {"v1": ["AWSCURRENT"], "v2": ["AWSPENDING"]}
        }

        with pytest.raises(SecretsUnavailableError, match="did not promote version v2"):
            await aws.rotate("app/db")

        assert client.describe_secret.call_count == 3
        client.get_secret_value.assert_not_called()

    async def test_rotate_generates_values(
        self, aws: AWSSecretsManagerBackend, client: MagicMock
    ) -> None:
        later = datetime(2026, 3, 2, tzinfo=UTC)
        client.get_secret_value.side_effect = [
            secret_response({"password": "old"}),
            secret_response({"password": "old"}),
            secret_response({"password": "ignored"}, created=later, version_id="v2"),
        ]
        client.put_secret_value.return_value = {"VersionId": "v2"}

        rotated = await aws.rotate("app/db")

        assert rotated.data["password"] != "old"
        assert rotated.version == int(later.timestamp() * 1000)
        client.rotate_secret.assert_not_called()

    async def test_health_check(self, aws: AWSSecretsManagerBackend, client: MagicMock) -> None:
        assert await aws.health_check() is True

        client.list_secrets.side_effect = client_error("AccessDeniedException", "ListSecrets")
        assert await aws.health_check() is False
