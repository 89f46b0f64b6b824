"""
External database connection models.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Literal
from uuid import uuid4

from pydantic import BaseModel, Field, SecretStr

EngineKind = Literal["postgresql", "mysql", "clickhouse", "mongodb"]

DEFAULT_PORTS: dict[str, int] = {
    "postgresql": 5432,
    "mysql": 3306,
    "clickhouse": 8123,
    "mongodb": 27017,
}


def _new_id() -> str:
    return uuid4().hex


class Connection(BaseModel):
    """
    Configuration identifying one external database.

    The password is never held in clear text on this record; ``credentials_ref``
    is a Fernet token opened by the CredentialVault when a handle is dialed.
    """

    connection_id: str = Field(default_factory=_new_id, description="Connection identifier")
    owner_id: str = Field(..., min_length=1, description="Owning user")
    engine: EngineKind = Field(..., description="Database engine kind")
    host: str = Field(..., min_length=1, description="Database host")
    port: int | None = Field(None, gt=0, le=65535, description="Port (engine default if unset)")
    database: str = Field(..., min_length=1, description="Target database/schema name")
    username: str | None = Field(None, description="Database user")
    credentials_ref: str | None = Field(
        None, description="Encrypted password token (see CredentialVault)"
    )
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(UTC), description="Creation timestamp"
    )

    @property
    def resolved_port(self) -> int:
        return self.port or DEFAULT_PORTS[self.engine]

    def describe(self) -> str:
        """Credential-free one-line description for logs."""
        user = f"{self.username}@" if self.username else ""
        return f"{self.engine}://{user}{self.host}:{self.resolved_port}/{self.database}"


class ConnectionConfig(BaseModel):
    """Decrypted dial parameters handed to an engine variant."""

    engine: EngineKind
    host: str
    port: int
    database: str
    username: str | None = None
    password: SecretStr | None = None

    @classmethod
    def from_connection(cls, connection: Connection, password: str | None) -> ConnectionConfig:
        return cls(
            engine=connection.engine,
            host=connection.host,
            port=connection.resolved_port,
            database=connection.database,
            username=connection.username,
            password=SecretStr(password) if password is not None else None,
        )

    def secret(self) -> str:
        return self.password.get_secret_value() if self.password else ""
