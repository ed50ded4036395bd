"""
Idempotency record model for capturing and replaying publish responses.
"""
from sqlalchemy import JSON, Column, DateTime, Index, LargeBinary, SmallInteger, String

from newsletter.database import Base


class IdempotencyRecord(Base):
    """One row per (account, idempotency key).

    A row starts out pending (no response columns set) when a request wins
    admission and becomes completed once the response is captured in the same
    transaction as the business write.
    """

    __tablename__ = "idempotency"

    account_id = Column(String(255), primary_key=True)
    idempotency_key = Column(String(255), primary_key=True)
    created_at = Column(DateTime(timezone=True), nullable=False)
    response_status_code = Column(SmallInteger, nullable=True)
    # Ordered list of {"name": str, "value": base64 str} objects
    response_headers = Column(JSON, nullable=True)
    response_body = Column(LargeBinary, nullable=True)

    # Indexes for performance
    __table_args__ = (
        Index("idx_idempotency_created_at", "created_at"),
    )

    @property
    def is_completed(self) -> bool:
        return self.response_status_code is not None

    def __repr__(self):
        return f"<IdempotencyRecord(account={self.account_id}, key={self.idempotency_key})>"
