from sqlalchemy import Column, Integer, String, Text

from app.core.base_model import Base, UTCDateTime, utcnow


class FaceSwapHistory(Base):
    """A delivered face swap result and the consumption that paid for it."""
    __tablename__ = "face_swap_histories"

    id = Column(Integer, primary_key=True)
    user_id = Column(String(64), nullable=False, index=True)
    result_image_path = Column(String(512), nullable=False)
    origin_image_url = Column(String(1024))
    description = Column(Text)
    credit_transaction_id = Column(Integer, index=True)
    processing_time_ms = Column(Integer)
    created_at = Column(UTCDateTime, nullable=False, default=utcnow)
