import uuid
from sqlalchemy import String, Boolean, JSON
from sqlalchemy.orm import Mapped, mapped_column
from app.database import Base


class HotelZone(Base):
    __tablename__ = "hotel_zones"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    hotel_name: Mapped[str] = mapped_column(String(255), nullable=False)
    zone_code: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    search_terms: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
