"""Per-account cost counter ORM model.

One row per account, updated in place. Cost increments run as a single
UPDATE ... SET cumulative_cost = cumulative_cost + :cost so concurrent workers
cannot lose an increment.
"""

from __future__ import annotations

from datetime import UTC, datetime

from sqlalchemy import DateTime, Float, String
from sqlalchemy.orm import Mapped, mapped_column

from llm_broker.database import Base


class MarginStateRecord(Base):
    """Cumulative provider cost against an account's subscription value.

    Attributes:
        uid: Account identifier supplied by the upstream auth layer
        cumulative_cost: USD spent on provider calls so far
        subscription_value: USD value of the account's subscription
        updated_at: Last modification timestamp (UTC)
    """

    __tablename__ = "margin_states"

    uid: Mapped[str] = mapped_column(String(128), primary_key=True)
    cumulative_cost: Mapped[float] = mapped_column(
        Float,
        nullable=False,
        default=0.0,
        comment="USD spent on provider calls",
    )
    subscription_value: Mapped[float] = mapped_column(
        Float,
        nullable=False,
        default=0.0,
        comment="USD value of the subscription the costs are measured against",
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(UTC),
        onupdate=lambda: datetime.now(UTC),
    )

    def __repr__(self) -> str:
        return (
            f"<MarginStateRecord uid={self.uid} cost={self.cumulative_cost:.4f} "
            f"value={self.subscription_value:.2f}>"
        )
