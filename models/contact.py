from sqlalchemy import Column, BigInteger, Integer, String, DateTime, Index
from datetime import datetime
from models.base import Base


class Contact(Base):
    """
    Shared contacts table fed by several independent importers.

    Every importer merge-upserts on email; a feed that lacks a field
    sends None and leaves whatever another feed stored untouched.

    Field ownership:
    - email: unique key, normalized to lower case
    - source_name, created_at: written once, on first insert
    - everything else: mergeable, non-null incoming values win
    """
    __tablename__ = "contacts"

    id = Column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)

    email = Column(String(255), nullable=False)
    external_id = Column(String(100), nullable=True, index=True)

    full_name = Column(String(500), nullable=True)
    phone = Column(String(50), nullable=True)
    city = Column(String(200), nullable=True)
    region = Column(String(200), nullable=True)
    specialty = Column(String(200), nullable=True)

    source_name = Column(String(100), nullable=True)
    last_login_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        Index("idx_contacts_email", "email", unique=True),
    )
