from uuid import uuid4

from sqlalchemy import Boolean, Column, Date, DateTime, Integer, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from ..database import Base


class AcademicCalendar(Base):
    __tablename__ = "academic_calendars"

    id = Column(Integer, primary_key=True, index=True)
    document_id = Column(String(64), unique=True, index=True, nullable=False, default=lambda: uuid4().hex)
    name = Column(String(150), nullable=False)
    academic_year_range = Column(String(20), nullable=True)  # e.g. "2025/26"
    is_active = Column(Boolean, nullable=False, default=False)
    start_date = Column(Date, nullable=True)
    end_date = Column(Date, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    offerings = relationship("ProgramOffering", back_populates="academic_calendar")
