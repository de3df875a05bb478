"""Link SQLAlchemy model."""

from datetime import datetime
from uuid import UUID, uuid4

from sqlalchemy import ForeignKey, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from linkpulse.core.database import Base


class Link(Base):
    """Link model for shortened URLs."""

    __tablename__ = "links"

    id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    user_id: Mapped[UUID] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    address: Mapped[str] = mapped_column(
        String(64),
        unique=True,
        nullable=False,
        index=True,
        comment="Short address for the URL (e.g., 'abc123' or 'my-custom-slug')",
    )
    target: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        comment="The URL to redirect to",
    )
    description: Mapped[str | None] = mapped_column(
        String(255),
        nullable=True,
    )
    visit_count: Mapped[int] = mapped_column(
        default=0,
        server_default="0",
        nullable=False,
        comment="Total visit count (denormalized for quick access, not authoritative)",
    )
    created_at: Mapped[datetime] = mapped_column(
        server_default=func.now(),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    def __repr__(self) -> str:
        return f"<Link {self.address} -> {self.target[:50]}>"
