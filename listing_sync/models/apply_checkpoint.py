# listing_sync/models/apply_checkpoint.py
from sqlalchemy import Column, DateTime, Float, JSON, String
from sqlalchemy.sql import func

from listing_sync.database import Base


class ApplyCheckpoint(Base):
    """
    Resume point of an apply run. One row per source file, keyed by the
    content hash of that file; the row is deleted once the run completes.
    """
    __tablename__ = "apply_checkpoints"

    file_hash = Column(String(64), primary_key=True)
    file_name = Column(String, nullable=True)

    # Serialized Checkpoint record
    data = Column(JSON, nullable=False)

    # Epoch seconds of the last write, mirrors Checkpoint.timestamp
    updated_at = Column(Float, nullable=False, index=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    def __repr__(self):
        return f"<ApplyCheckpoint(file_hash='{self.file_hash}', file_name='{self.file_name}')>"
