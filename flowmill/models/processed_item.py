"""Processed-item records used to skip source items already handled."""

from datetime import datetime

from sqlmodel import Field, SQLModel, UniqueConstraint

from .base import utcnow


class ProcessedItem(SQLModel, table=True):
    """One source item that produced output for a flow step."""

    __tablename__ = "processed_item"
    __table_args__ = (
        UniqueConstraint(
            "flow_step_id", "source_type", "item_identifier", name="uq_processed_item"
        ),
    )

    id: int | None = Field(default=None, primary_key=True)
    flow_step_id: str = Field(index=True, max_length=255)
    source_type: str = Field(max_length=100)
    item_identifier: str = Field(max_length=512)
    job_id: int = Field(index=True)
    processed_at: datetime = Field(default_factory=utcnow)
