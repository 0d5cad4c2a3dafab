from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict

from models import Role, RecordType, AccessAction


class _Snapshot(BaseModel):
    # Immutable copies of table rows; safe to hand out after the session closes
    model_config = ConfigDict(from_attributes=True, frozen=True)


class ActorOut(_Snapshot):
    address: str
    name: str
    role: Role
    is_registered: bool
    registered_at: datetime


class GrantOut(_Snapshot):
    patient_address: str
    provider_address: str
    active: bool
    granted_at: datetime
    revoked_at: Optional[datetime] = None


class RecordOut(_Snapshot):
    id: int
    patient_address: str
    uploader_address: str
    record_type: RecordType
    description: str
    content_hash: str
    created_at: datetime
    active: bool
    # Set on results whose audit entry is still queued for a later flush
    audit_pending: bool = False


class AccessLogOut(_Snapshot):
    record_id: int
    seq: int
    accessor_address: str
    action: AccessAction
    timestamp: datetime
    context: Optional[str] = None
    prev_digest: str
    digest: str


class DocumentOut(_Snapshot):
    record: RecordOut
    data: bytes
