from uuid import uuid4

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from ..database import Base


class ProgramOffering(Base):
    __tablename__ = "program_offerings"

    id = Column(Integer, primary_key=True, index=True)
    document_id = Column(String(64), unique=True, index=True, nullable=False, default=lambda: uuid4().hex)
    program_id = Column(Integer, ForeignKey("programs.id"), nullable=True)
    batch_id = Column(Integer, ForeignKey("batches.id"), nullable=True)
    academic_calendar_id = Column(Integer, ForeignKey("academic_calendars.id"), nullable=True)
    is_open_for_apply = Column(Boolean, nullable=False, default=False)
    capacity = Column(Integer, nullable=True)  # NULL = unlimited seats
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    program = relationship("Program", back_populates="offerings")
    batch = relationship("Batch", back_populates="offerings")
    academic_calendar = relationship("AcademicCalendar", back_populates="offerings")
    applications = relationship("StudentApplication", back_populates="program_offering")
