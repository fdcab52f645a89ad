from db import Base
from sqlalchemy import Column, Integer, Float, String, DateTime, Boolean, JSON, CheckConstraint, func

class Memorial(Base):
    __tablename__ = "memorials"
    # a public memorial must carry coordinates
    __table_args__ = (
        CheckConstraint(
            "is_public = 0 OR (latitude IS NOT NULL AND longitude IS NOT NULL)",
            name="ck_public_has_location",
        ),
    )

    memorial_id = Column(Integer, primary_key=True, index=True)
    owner_id = Column(String(128), index=True, nullable=False)
    owner_display_name = Column(String(255))
    name = Column(String(255), nullable=False)
    model_ref = Column(String(128), nullable=False)
    birth_date = Column(String(32))
    death_date = Column(String(32))
    song_link = Column(String(512))
    images = Column(JSON, nullable=False, default=list)
    is_public = Column(Boolean, nullable=False, default=False, index=True)
    latitude = Column(Float)
    longitude = Column(Float)
    address = Column(String(512))
    position_key = Column(String(64), index=True)
    created_at = Column(DateTime, server_default=func.now(), index=True)
    updated_at = Column(DateTime, onupdate=func.now())

    @property
    def location(self):
        if self.latitude is None or self.longitude is None:
            return None
        return {
            "latitude": self.latitude,
            "longitude": self.longitude,
            "address": self.address,
            "position_key": self.position_key,
        }
