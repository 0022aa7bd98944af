"""User model definitions."""

from sqlalchemy import Column, Integer, Numeric, String
from backend.database import Base

PATIENT_ROLE = "patient"
PRACTITIONER_ROLE = "practitioner"
ADMIN_ROLE = "admin"


class User(Base):
    """Identity record supplied by the identity provider."""
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String, unique=True, index=True)
    full_name = Column(String)
    role = Column(String)  # patient/practitioner/admin
    consultation_fee = Column(Numeric(10, 2))
