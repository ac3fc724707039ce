"""
Generated Image Model
Metadata for artifacts produced by batch items. The bytes live in storage.
"""

from datetime import datetime
from sqlalchemy import Column, Index, Integer, String, Text, DateTime, JSON

from studio.core.database import Base


class GeneratedImage(Base):
    """A stored generation artifact (image or video)."""

    __tablename__ = "generated_images"

    id = Column(String, primary_key=True)  # img_xxxx format
    owner_id = Column(String, nullable=False)
    batch_job_id = Column(String, nullable=True, index=True)
    item_index = Column(Integer, nullable=True)

    # Storage
    storage_key = Column(String, nullable=False)
    url = Column(String, nullable=False)
    content_type = Column(String, nullable=False, default="image/jpeg")
    size_bytes = Column(Integer, nullable=False, default=0)

    # Generation details
    prompt = Column(Text, nullable=False)
    model = Column(String, nullable=True)
    width = Column(Integer, nullable=True)
    height = Column(Integer, nullable=True)
    seed = Column(Integer, nullable=True)
    generation_params = Column(JSON, default=dict)

    # public | unlisted
    visibility = Column(String, nullable=False, default="public")

    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        Index("ix_generated_images_owner_created", "owner_id", "created_at"),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "owner_id": self.owner_id,
            "batch_job_id": self.batch_job_id,
            "item_index": self.item_index,
            "storage_key": self.storage_key,
            "url": self.url,
            "content_type": self.content_type,
            "size_bytes": self.size_bytes,
            "prompt": self.prompt,
            "model": self.model,
            "width": self.width,
            "height": self.height,
            "seed": self.seed,
            "generation_params": dict(self.generation_params or {}),
            "visibility": self.visibility,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
