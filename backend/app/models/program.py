from uuid import uuid4

from sqlalchemy import Column, DateTime, Integer, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from ..database import Base


class Program(Base):
    __tablename__ = "programs"

    id = Column(Integer, primary_key=True, index=True)
    document_id = Column(String(64), unique=True, index=True, nullable=False, default=lambda: uuid4().hex)
    name = Column(String(150), nullable=False)
    full_name = Column(String(255), nullable=True)
    level = Column(String(50), nullable=True)  # Undergraduate / Postgraduate / PhD / PGDT / Remedial
    mode = Column(String(50), nullable=True)  # Regular / Extension / Weekend
    duration = Column(Integer, nullable=True)  # years
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    batches = relationship("Batch", back_populates="program")
    offerings = relationship("ProgramOffering", back_populates="program")
