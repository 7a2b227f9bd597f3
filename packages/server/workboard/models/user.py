"""User model (identity is verified elsewhere; the core only references ids)."""

from sqlmodel import Field, SQLModel

from .base import TimestampMixin, UUIDMixin


class User(UUIDMixin, TimestampMixin, SQLModel, table=True):
    __tablename__ = "users"

    email: str = Field(unique=True, nullable=False, index=True)
    display_name: str = Field(nullable=False)
