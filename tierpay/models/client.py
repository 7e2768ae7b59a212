import uuid

from sqlalchemy import String
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from tierpay.db import Base, TimestampMixin


class Client(TimestampMixin, Base):
    """A client account. Owned by the admin domain; billing only reads it
    and sets ``stripe_customer_id`` once."""

    __tablename__ = "clients"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    contact_name: Mapped[str | None] = mapped_column(String(255))
    contact_email: Mapped[str | None] = mapped_column(String(255))
    stripe_customer_id: Mapped[str | None] = mapped_column(String(255), unique=True)

    recommendations = relationship("Recommendation", back_populates="client")
    subscriptions = relationship("Subscription", back_populates="client")
