from uuid import uuid4

from sqlalchemy import Column, DateTime, ForeignKey, Integer, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from ..database import Base


class Batch(Base):
    __tablename__ = "batches"

    id = Column(Integer, primary_key=True, index=True)
    document_id = Column(String(64), unique=True, index=True, nullable=False, default=lambda: uuid4().hex)
    program_id = Column(Integer, ForeignKey("programs.id"), nullable=True)
    name = Column(String(150), nullable=False)
    code = Column(String(50), nullable=True)
    intake_year = Column(Integer, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    program = relationship("Program", back_populates="batches")
    offerings = relationship("ProgramOffering", back_populates="batch")
