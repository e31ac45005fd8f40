"""
SQLAlchemy database models.

The ledger is stored as JSON documents addressed by slash-separated keys
(players/<wallet>, tournaments/current, claims/<id>, ...), mirroring the
key/value layout of the remote document store backend.
"""

from sqlalchemy import JSON, Column, DateTime, String
from sqlalchemy.sql import func

from chum_rewards.database import Base


class Document(Base):
    """
    Documents table: one JSON document per key.

    Writes are last-write-wins; there are no cross-document transactions.
    """
    __tablename__ = "documents"

    # Slash-separated key, e.g. "players/<wallet>"
    key = Column(String, primary_key=True, index=True)

    # Parent collection ("players", "tournaments/history", ...) for prefix loads
    collection = Column(String, nullable=False, index=True)

    data = Column(JSON, nullable=True)

    # Timestamps
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)
