"""Database models for katana-ci.

Models are defined using SQLModel (SQLAlchemy + Pydantic). Table and column
names are kept compatible with databases created by earlier releases
(``user_info`` / ``instance_info``).
"""

from datetime import UTC, datetime

from sqlalchemy import Column, DateTime
from sqlmodel import Field, SQLModel


def utc_now() -> datetime:
    """Get current UTC datetime."""
    return datetime.now(UTC)


class Tenant(SQLModel, table=True):
    """A CI consumer identified by a static API key."""

    __tablename__ = "user_info"

    api_key: str = Field(primary_key=True)
    user_name: str


class Instance(SQLModel, table=True):
    """A live sequencer container reachable through the proxy."""

    __tablename__ = "instance_info"

    instance_name: str = Field(primary_key=True)
    container_id: str
    api_key: str = Field(foreign_key="user_info.api_key", index=True)
    proxied_port: int = Field(unique=True)
    created_at: datetime = Field(
        default_factory=utc_now,
        sa_column=Column(DateTime(timezone=True), nullable=False),
    )
