"""Secret request and response schemas."""

from datetime import datetime

from pydantic import BaseModel, Field

from secret_broker.secrets.protocol import SecretValue


class SecretResponse(BaseModel):
    """A secret value returned to an authorized caller."""

    path: str = Field(..., description="Normalized secret path")
    data: dict[str, str] = Field(..., description="Field name to value")
    version: int = Field(..., description="Secret version")
    lease_expiry: datetime | None = Field(
        default=None, description="When the backend lease ends (static secrets: null)"
    )
    cached: bool = Field(default=False, description="Served from the lease cache")

    @classmethod
    def from_value(cls, value: SecretValue) -> "SecretResponse":
        return cls(**value.to_public_dict())


class WriteSecretRequest(BaseModel):
    """Body of a secret write."""

    data: dict[str, str] = Field(..., min_length=1, description="Field name to value")
    expected_version: int | None = Field(
        default=None,
        ge=0,
        description="Check-and-set: current version the write is based on (0 = create only)",
    )

    model_config = {"json_schema_extra": {"example": {
        "data": {"username": "billing", "password": "correct-horse-battery-staple"},
        "expected_version": 3,
    }}}


class WriteSecretResponse(BaseModel):
    """Result of a secret write."""

    path: str
    version: int
