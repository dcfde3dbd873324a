"""ORM models. Import here so Base.metadata sees every table."""

from llm_broker.models.margin_state import MarginStateRecord

__all__ = ["MarginStateRecord"]
