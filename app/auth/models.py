import uuid
from datetime import datetime

from sqlalchemy import Column, DateTime, String, Text, Uuid

from app.db.session import Base


class User(Base):
    """Staff or parent account with a single active role (admin, teacher, parent, accountant)."""

    __tablename__ = "users"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    full_name = Column(String(255), nullable=False)
    email = Column(String(255), nullable=False, unique=True)
    mobile = Column(String(50), nullable=True)
    password_hash = Column(Text, nullable=False)
    role = Column(String(50), nullable=False)
    status = Column(String(20), nullable=False, default="ACTIVE")
    created_at = Column(DateTime(timezone=True), default=datetime.utcnow, nullable=False)
    role_assigned_at = Column(DateTime(timezone=True), default=datetime.utcnow, nullable=False)
