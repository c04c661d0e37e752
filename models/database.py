"""SQLAlchemy models with encrypted-at-rest fields."""

from sqlalchemy import Column, DateTime, Integer, String, func
from sqlalchemy.orm import DeclarativeBase

from db.encrypted_type import EncryptedJSON, EncryptedString
from db.events import register_searchable_index


class Base(DeclarativeBase):
    pass


# ─── Models ───────────────────────────────────────────────────────────────────


class User(Base):
    """An application user whose personal data is encrypted at rest.

    ``email`` is encrypted and searchable through ``email_index``.  The
    ``metadata`` and ``preferences`` JSON columns keep only their listed keys
    encrypted.
    """

    __tablename__ = "users"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(255), nullable=False)
    email = Column(EncryptedString(255, searchable="email_index"), nullable=True)
    email_index = Column(String(64), nullable=True, unique=True, index=True)
    password = Column(String(255), nullable=True)

    phone = Column(EncryptedString(255), nullable=True)
    address = Column(EncryptedString, nullable=True)
    ip_address = Column(EncryptedString(255), nullable=True)
    social_security_number = Column(EncryptedString(255), nullable=True)

    # "metadata" is reserved on declarative classes
    metadata_ = Column(
        "metadata",
        EncryptedJSON(["credit_card_number", "emergency_contact_phone", "personal_id_number"]),
        nullable=True,
    )
    preferences = Column(EncryptedJSON(["secondary_email", "recovery_phone"]), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)


register_searchable_index(User)
