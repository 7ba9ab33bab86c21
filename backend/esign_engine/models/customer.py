"""
Customer Model — Signer records on file.
Manual identity verification compares signer-supplied details against these
fields; OTP codes are delivered to the email / phone stored here.
"""
from datetime import datetime
from sqlalchemy import Column, String, DateTime

from esign_engine.database import Base
from esign_engine.utils.clock import utcnow


class Customer(Base):
    __tablename__ = "customers"

    id = Column(String(36), primary_key=True, index=True)
    customer_type = Column(String(16), nullable=False, default="individual")  # individual | corporate

    full_name = Column(String(128), nullable=False)
    email = Column(String(254))
    phone = Column(String(32))

    # Individuals
    id_number = Column(String(32), index=True)
    date_of_birth = Column(String(10))            # YYYY-MM-DD

    # Companies
    registration_number = Column(String(32), index=True)
    registration_date = Column(String(10))        # YYYY-MM-DD

    created_at = Column(DateTime, default=utcnow)

    @property
    def is_corporate(self) -> bool:
        return self.customer_type == "corporate"
