"""Load and validate profiles from an AWS-style credentials file.

Each INI section is a profile. Besides the usual AWS keys, every profile
declares a ``provider`` which decides which keys are required::

    [r2-prod]
    provider = cloudflare
    aws_access_key_id = ...
    aws_secret_access_key = ...
    aws_region = auto
    aws_endpoint = https://acct.example.r2storage.com

Any problem is a configuration error: the daemon refuses to start rather
than failing per file later.
"""

import configparser
import logging
import os
from collections.abc import Iterator
from pathlib import Path

from pydantic import ValidationError

from flood.schemas.profiles import BASE_REQUIRED_KEYS, PROVIDER_EXTRA_KEYS, Profile, Provider

logger = logging.getLogger(__name__)

DEFAULT_CREDENTIALS_PATH = Path("~/.aws/credentials")

# Accepted spellings, first one is canonical.
_KEY_ALIASES: dict[str, tuple[str, ...]] = {
    "aws_region": ("aws_region", "region"),
    "aws_endpoint": ("aws_endpoint", "endpoint_url"),
}


class ConfigurationError(Exception):
    """The credentials or configuration cannot be used; startup must abort."""


class UnknownProfileError(KeyError):
    """A profile name is not present in the registry."""

    def __str__(self) -> str:
        return f"Unknown profile: {self.args[0]!r}"


class ProfileRegistry:
    """Immutable, ordered collection of validated profiles.

    Built once at startup and passed to each component that needs it.
    """

    def __init__(self, profiles: list[Profile]) -> None:
        if not profiles:
            raise ConfigurationError("No profiles defined")
        self._profiles: dict[str, Profile] = {p.name: p for p in profiles}

    def get(self, name: str) -> Profile:
        try:
            return self._profiles[name]
        except KeyError:
            raise UnknownProfileError(name) from None

    def names(self) -> list[str]:
        return list(self._profiles)

    def __contains__(self, name: object) -> bool:
        return name in self._profiles

    def __iter__(self) -> Iterator[Profile]:
        return iter(self._profiles.values())

    def __len__(self) -> int:
        return len(self._profiles)


def find_credentials_file(explicit: str | Path | None = None) -> Path:
    """Locate the credentials file.

    Search order: the explicit path, ``AWS_SHARED_CREDENTIALS_FILE``, then
    ``~/.aws/credentials`` (the AWS CLI's own lookup).

    Raises:
        ConfigurationError: No candidate exists.
    """
    candidates: list[Path] = []
    if explicit:
        candidates.append(Path(explicit).expanduser())
    env_path = os.environ.get("AWS_SHARED_CREDENTIALS_FILE")
    if env_path:
        candidates.append(Path(env_path).expanduser())
    candidates.append(DEFAULT_CREDENTIALS_PATH.expanduser())

    for candidate in candidates:
        if candidate.is_file():
            logger.info("Using credentials file %s", candidate)
            return candidate

    raise ConfigurationError(
        "No credentials file found (tried: " + ", ".join(str(c) for c in candidates) + ")"
    )


def _lookup(section: configparser.SectionProxy, key: str) -> str:
    for alias in _KEY_ALIASES.get(key, (key,)):
        value = section.get(alias, "").strip()
        if value:
            return value
    return ""


def parse_profile(name: str, section: configparser.SectionProxy) -> Profile:
    """Validate one INI section into a Profile.

    Raises:
        ConfigurationError: Missing/unknown provider or missing keys.
    """
    raw_provider = section.get("provider", "").strip().lower()
    if not raw_provider:
        raise ConfigurationError(f"Profile [{name}] is missing the 'provider' key")
    try:
        provider = Provider(raw_provider)
    except ValueError:
        allowed = ", ".join(p.value for p in Provider)
        raise ConfigurationError(
            f"Profile [{name}] has unknown provider {raw_provider!r} (expected one of: {allowed})"
        ) from None

    required = BASE_REQUIRED_KEYS + PROVIDER_EXTRA_KEYS[provider]
    missing = [key for key in required if not _lookup(section, key)]
    if missing:
        raise ConfigurationError(
            f"Profile [{name}] ({provider.value}) is missing required key(s): {', '.join(missing)}"
        )

    try:
        return Profile(
            name=name,
            provider=provider,
            region=_lookup(section, "aws_region"),
            endpoint=_lookup(section, "aws_endpoint") or None,
            access_key_id=_lookup(section, "aws_access_key_id"),
            secret_access_key=_lookup(section, "aws_secret_access_key"),
        )
    except ValidationError as exc:
        raise ConfigurationError(f"Profile [{name}] is invalid: {exc}") from exc


def load_profiles(path: str | Path) -> ProfileRegistry:
    """Parse and validate every profile in a credentials file.

    Raises:
        ConfigurationError: Unreadable file, no profiles, or an invalid profile.
    """
    parser = configparser.ConfigParser(default_section="__no_defaults__", interpolation=None)
    try:
        with open(path) as f:
            parser.read_file(f)
    except (OSError, configparser.Error) as exc:
        raise ConfigurationError(f"Cannot read credentials file {path}: {exc}") from exc

    profiles = [parse_profile(name, parser[name]) for name in parser.sections()]
    if not profiles:
        raise ConfigurationError(f"Credentials file {path} defines no profiles")

    logger.info(
        "Loaded %d profile(s) from %s: %s",
        len(profiles),
        path,
        ", ".join(p.name for p in profiles),
    )
    return ProfileRegistry(profiles)
