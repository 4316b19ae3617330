from uuid import uuid4

from sqlalchemy import Column, DateTime, ForeignKey, Integer, String, UniqueConstraint
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from ..database import Base


class StudentApplication(Base):
    __tablename__ = "student_applications"
    __table_args__ = (
        UniqueConstraint("student_profile_id", "program_offering_id", name="uq_student_applications_profile_offering"),
    )

    id = Column(Integer, primary_key=True, index=True)
    document_id = Column(String(64), unique=True, index=True, nullable=False, default=lambda: uuid4().hex)
    student_profile_id = Column(Integer, ForeignKey("student_profiles.id"), nullable=False)
    program_offering_id = Column(Integer, ForeignKey("program_offerings.id"), nullable=False, index=True)
    academic_calendar_id = Column(Integer, ForeignKey("academic_calendars.id"), nullable=True)
    application_status = Column(String(20), nullable=False, default="Draft")
    submitted_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    student_profile = relationship("StudentProfile", back_populates="applications")
    program_offering = relationship("ProgramOffering", back_populates="applications")
    academic_calendar = relationship("AcademicCalendar")
