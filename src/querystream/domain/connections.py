"""
Users and target database connections.

Both are owned by external systems; the pipeline only reads them.
"""

from typing import Optional

from pydantic import BaseModel, Field, SecretStr

from .base_enums import DatabaseDialect, PlanTier


class UserAccount(BaseModel):
    """A caller known to the service, with its plan tier."""

    id: str = Field(..., description="User identifier")
    plan: PlanTier = Field(default=PlanTier.FREE, description="Current plan tier")
    email: Optional[str] = Field(default=None, description="Contact email")


class ConnectionDescriptor(BaseModel):
    """
    Everything needed to reach one target database.

    `database` holds the file path for SQLite connections.
    """

    id: str = Field(..., description="Connection identifier")
    user_id: str = Field(..., description="Owner of the connection")
    name: str = Field(default="", description="Display name")
    dialect: DatabaseDialect = Field(..., description="Database dialect")
    host: Optional[str] = Field(default=None, description="Database host")
    port: Optional[int] = Field(default=None, description="Database port")
    database: str = Field(..., description="Database name, or file path for SQLite")
    username: Optional[str] = Field(default=None, description="Login user")
    password: Optional[SecretStr] = Field(default=None, description="Login password")
    ssl: bool = Field(default=False, description="Require TLS for the connection")

    def connect_kwargs(self) -> dict:
        """Keyword arguments for asyncpg.connect (PostgreSQL only)."""
        kwargs: dict = {
            "host": self.host,
            "port": self.port or 5432,
            "database": self.database,
            "user": self.username,
        }
        if self.password is not None:
            kwargs["password"] = self.password.get_secret_value()
        if self.ssl:
            kwargs["ssl"] = "require"
        return kwargs
