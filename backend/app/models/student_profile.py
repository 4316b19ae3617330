from uuid import uuid4

from sqlalchemy import Column, DateTime, ForeignKey, Integer, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from ..database import Base


class StudentProfile(Base):
    __tablename__ = "student_profiles"

    id = Column(Integer, primary_key=True, index=True)
    document_id = Column(String(64), unique=True, index=True, nullable=False, default=lambda: uuid4().hex)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=True, index=True)
    # Legacy linkage for records migrated before the user relation existed.
    email = Column(String(255), nullable=True, index=True)
    legacy_user_id = Column(String(64), nullable=True, index=True)
    first_name = Column(String(100), nullable=True)
    father_name = Column(String(100), nullable=True)
    grand_father_name = Column(String(100), nullable=True)
    phone_number = Column(String(30), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    user = relationship("User", back_populates="student_profiles")
    applications = relationship("StudentApplication", back_populates="student_profile")
