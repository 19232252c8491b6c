"""Blacklisted access tokens - survives process restarts."""

from datetime import datetime

from sqlalchemy import DateTime, String
from sqlalchemy.orm import Mapped, mapped_column

from sessionkeeper.core.database import Base


class TokenBlacklist(Base):
    """A revoked access token identified by its JTI claim.

    Entries are created on logout and are ignored once expires_at passes;
    the cleanup job deletes them afterwards.
    """

    __tablename__ = "token_blacklist"

    jti: Mapped[str] = mapped_column(String(64), primary_key=True)
    expires_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, index=True
    )
