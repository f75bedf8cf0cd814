"""
Supported database engine versions.

Version tables are data: the lookup is a collaborator that services receive,
so providers can plug in their own managed tables.
"""

from typing import Dict, Optional, Protocol

from pydantic import BaseModel

from .errors import CommandError
from .models import DatabaseType


class VersionsNumber(BaseModel):
    """Loose version number. Not SemVer: some providers publish ``6.x``."""

    major: str
    minor: Optional[str] = None
    patch: Optional[str] = None
    suffix: Optional[str] = None

    @classmethod
    def parse(cls, version: str) -> "VersionsNumber":
        if not version.strip():
            raise CommandError("version cannot be empty")

        parts = [part.strip() for part in version.split(".", 3)]
        major = parts[0].replace("v", "")
        minor = parts[1].replace("+", "") if len(parts) > 1 else None
        patch = parts[2] if len(parts) > 2 else None
        suffix = parts[3] if len(parts) > 3 else None

        return cls(major=major, minor=minor, patch=patch, suffix=suffix)

    def __str__(self) -> str:
        return ".".join(
            part for part in (self.major, self.minor, self.patch, self.suffix) if part is not None
        )

    def to_major_version_string(self) -> str:
        return self.major

    def to_major_minor_version_string(self, default_minor: str) -> str:
        return f"{self.major}.{self.minor if self.minor is not None else default_minor}"


def generate_supported_version(
    major: int,
    minor_min: int,
    minor_max: int,
    update_min: Optional[int] = None,
    update_max: Optional[int] = None,
    suffix: str = "",
) -> Dict[str, str]:
    """Expand a version range into ``requested -> concrete`` entries.

    The major alone and each ``major.minor`` point to the latest patch.
    """
    supported: Dict[str, str] = {}

    if update_min is not None and update_max is not None:
        latest_major_version = f"{major}.{minor_max}.{update_max}{suffix}"
        for minor in range(minor_min, minor_max + 1):
            supported[f"{major}.{minor}"] = f"{major}.{minor}.{update_max}{suffix}"
            for update in range(update_min, update_max + 1):
                version = f"{major}.{minor}.{update}"
                supported[version] = f"{version}{suffix}"
    else:
        latest_major_version = f"{major}.{minor_max}{suffix}"
        for minor in range(minor_min, minor_max + 1):
            version = f"{major}.{minor}"
            supported[version] = f"{version}{suffix}"

    supported[str(major)] = latest_major_version
    return supported


def get_supported_version_to_use(
    database_name: str, all_supported_versions: Dict[str, str], version_to_check: str
) -> str:
    """Pick the concrete version matching the requested precision."""
    version = VersionsNumber.parse(version_to_check)

    if version.patch is not None:
        key = f"{version.major}.{version.minor}.{version.patch}"
    elif version.minor is not None:
        key = f"{version.major}.{version.minor}"
    else:
        key = version.major

    try:
        return all_supported_versions[key]
    except KeyError:
        raise CommandError(f"{database_name} {version_to_check} version is not supported")


def _self_hosted_tables() -> Dict[DatabaseType, Dict[str, str]]:
    postgres: Dict[str, str] = {}
    postgres.update(generate_supported_version(10, 1, 16, 0, 0))
    postgres.update(generate_supported_version(11, 1, 11, 0, 0))
    postgres.update(generate_supported_version(12, 2, 8, 0, 0))
    postgres.update(generate_supported_version(13, 1, 4, 0, 0))

    mysql: Dict[str, str] = {}
    mysql.update(generate_supported_version(5, 7, 7, 16, 34))
    mysql.update(generate_supported_version(8, 0, 0, 11, 24))

    mongodb: Dict[str, str] = {}
    mongodb.update(generate_supported_version(3, 6, 6, 0, 22))
    mongodb.update(generate_supported_version(4, 0, 0, 0, 23))
    mongodb.update(generate_supported_version(4, 2, 2, 0, 12))
    mongodb.update(generate_supported_version(4, 4, 4, 0, 4))

    redis = {"6": "6.0.9", "6.0": "6.0.9", "5": "5.0.10", "5.0": "5.0.10"}

    return {
        DatabaseType.POSTGRESQL: postgres,
        DatabaseType.MYSQL: mysql,
        DatabaseType.MONGODB: mongodb,
        DatabaseType.REDIS: redis,
    }


SELF_HOSTED_VERSIONS = _self_hosted_tables()


class SupportedVersionLookup(Protocol):
    def resolve(self, database_type: DatabaseType, requested: str, managed: bool) -> str:
        ...


class StaticVersionLookup:
    """Table-driven lookup. Managed tables are provider data passed in."""

    def __init__(
        self,
        managed: Optional[Dict[DatabaseType, Dict[str, str]]] = None,
        self_hosted: Optional[Dict[DatabaseType, Dict[str, str]]] = None,
    ):
        self.managed = managed or {}
        self.self_hosted = self_hosted if self_hosted is not None else SELF_HOSTED_VERSIONS

    def resolve(self, database_type: DatabaseType, requested: str, managed: bool) -> str:
        tables = self.managed if managed else self.self_hosted
        label = f"{'Managed' if managed else 'Self-hosted'} {database_type.value}"
        table = tables.get(database_type)
        if table is None:
            raise CommandError(f"{label} is not supported on this provider")
        return get_supported_version_to_use(label, table, requested)
