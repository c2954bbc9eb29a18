"""Schemas for credential profiles loaded from an AWS-style credentials file."""

from enum import StrEnum

from pydantic import BaseModel, ConfigDict, Field, SecretStr


class Provider(StrEnum):
    """S3-compatible storage providers a profile can target."""

    AMAZON = "amazon"
    CLOUDFLARE = "cloudflare"
    BACKBLAZE = "backblaze"


# Keys every profile must carry, plus the extras each provider needs.
BASE_REQUIRED_KEYS: tuple[str, ...] = ("aws_access_key_id", "aws_secret_access_key", "aws_region")
PROVIDER_EXTRA_KEYS: dict[Provider, tuple[str, ...]] = {
    Provider.AMAZON: (),
    Provider.CLOUDFLARE: ("aws_endpoint",),
    Provider.BACKBLAZE: ("aws_endpoint",),
}


class Profile(BaseModel):
    """A named set of credentials and endpoint settings for one backend."""

    model_config = ConfigDict(frozen=True)

    name: str
    provider: Provider
    region: str = Field(min_length=1)
    endpoint: str | None = Field(default=None, description="Endpoint URL; None uses the AWS default")
    access_key_id: str = Field(min_length=1)
    secret_access_key: SecretStr
