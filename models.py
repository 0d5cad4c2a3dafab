import enum

from sqlalchemy import (
    Column, Integer, String, Text, LargeBinary, DateTime, Boolean, ForeignKey, UniqueConstraint,
    Enum, Index,
)
from sqlalchemy.orm import relationship
from db import Base


class Role(str, enum.Enum):
    PATIENT = "PATIENT"
    DOCTOR = "DOCTOR"
    HOSPITAL = "HOSPITAL"
    PHARMACY = "PHARMACY"
    CLINIC = "CLINIC"

    @property
    def is_provider(self) -> bool:
        return self is not Role.PATIENT


class RecordType(str, enum.Enum):
    PRESCRIPTION = "PRESCRIPTION"
    LAB_RESULT = "LAB_RESULT"
    DIAGNOSIS = "DIAGNOSIS"
    MEDICAL_HISTORY = "MEDICAL_HISTORY"
    VACCINATION = "VACCINATION"


class AccessAction(str, enum.Enum):
    VIEW = "VIEW"
    CREATE = "CREATE"
    UPDATE = "UPDATE"
    ARCHIVE = "ARCHIVE"


class Actor(Base):
    __tablename__ = "actors"

    address = Column(String, primary_key=True)
    name = Column(String, nullable=False)
    role = Column(Enum(Role, name="role"), nullable=False)
    is_registered = Column(Boolean, nullable=False, default=True)
    registered_at = Column(DateTime, nullable=False)
    # argon2 hash; actors registered without a password cannot log in
    password_hash = Column(String, nullable=True)


class AuthorizationEdge(Base):
    """
    Patient -> provider grant. Revoking flips ``active``; rows are never deleted.
    """
    __tablename__ = "authorization_edges"

    id = Column(Integer, primary_key=True)
    patient_address = Column(String, ForeignKey("actors.address"), nullable=False, index=True)
    provider_address = Column(String, ForeignKey("actors.address"), nullable=False)
    active = Column(Boolean, nullable=False, default=True)
    granted_at = Column(DateTime, nullable=False)
    revoked_at = Column(DateTime, nullable=True)

    __table_args__ = (UniqueConstraint("patient_address", "provider_address", name="uq_patient_provider"),)


class RecordEntry(Base):
    __tablename__ = "records"

    # AUTOINCREMENT: ids are never handed out twice
    id = Column(Integer, primary_key=True, autoincrement=True)
    patient_address = Column(String, ForeignKey("actors.address"), nullable=False, index=True)
    uploader_address = Column(String, ForeignKey("actors.address"), nullable=False)
    record_type = Column(Enum(RecordType, name="record_type"), nullable=False)
    description = Column(Text, nullable=False, default="")
    content_hash = Column(String, nullable=False)
    created_at = Column(DateTime, nullable=False)
    active = Column(Boolean, nullable=False, default=True)

    access_logs = relationship("AccessLogEntry", back_populates="record", order_by="AccessLogEntry.seq")

    __table_args__ = (
        Index("ix_records_patient_created", "patient_address", "created_at"),
        {"sqlite_autoincrement": True},
    )


class AccessLogEntry(Base):
    """
    Append-only; ``seq`` is gap-free per record and ``digest`` chains each row to its predecessor.
    """
    __tablename__ = "access_logs"

    id = Column(Integer, primary_key=True)
    record_id = Column(Integer, ForeignKey("records.id"), nullable=False)
    seq = Column(Integer, nullable=False)
    accessor_address = Column(String, nullable=False)
    action = Column(Enum(AccessAction, name="access_action"), nullable=False)
    timestamp = Column(DateTime, nullable=False)
    context = Column(String, nullable=True)
    prev_digest = Column(String(64), nullable=False)
    digest = Column(String(64), nullable=False)

    record = relationship("RecordEntry", back_populates="access_logs")

    __table_args__ = (UniqueConstraint("record_id", "seq", name="uq_record_seq"),)


class Blob(Base):
    """
    Content-addressed document bytes; the key is the SHA-256 of ``data``.
    """
    __tablename__ = "blobs"

    content_hash = Column(String(64), primary_key=True)
    data = Column(LargeBinary, nullable=False)
    size = Column(Integer, nullable=False)
    stored_at = Column(DateTime, nullable=False)
