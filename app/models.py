from pydantic import BaseModel, Field
from typing import Any, Dict, List, Optional


class NonceRequest(BaseModel):
    user_id: str = Field(min_length=1, max_length=100)


class AuthenticateRequest(BaseModel):
    user_id: str = Field(min_length=1, max_length=100)
    nonce: str
    signature: str


class PublicKeysModel(BaseModel):
    encryption_key: str
    signing_key: str


class RegisterRequest(BaseModel):
    user_id: str = Field(min_length=1, max_length=100)
    role: str
    public_keys: PublicKeysModel


class DecisionRequest(BaseModel):
    user_id: str
    decision: str
    admin_signature: str


class DeactivateRequest(BaseModel):
    user_id: str
    admin_signature: str


class PermissionModel(BaseModel):
    resource_type: str
    access_level: str
    conditions: List[str] = Field(default_factory=list)


class GrantRequest(BaseModel):
    patient_id: str
    provider_id: str
    permissions: List[PermissionModel]
    patient_signature: str
    expiration_time: Optional[str] = None
    request_nonce: str
    issued_at: str


class RevokeRequest(BaseModel):
    consent_token_id: str
    patient_signature: str


class ValidateAccessRequest(BaseModel):
    provider_id: str
    patient_id: str
    resource_type: str
    access_level: str


class RecordMetadataModel(BaseModel):
    resource_type: str
    filename: str
    mime_type: str
    original_size: int = 0
    encryption_algorithm: str
    original_file_hash: str
    description: Optional[str] = None


class UploadRequest(BaseModel):
    patient_id: str
    provider_id: str
    encrypted_data: str = Field(description="base64 of the client-encrypted blob")
    metadata: RecordMetadataModel
    provider_signature: str


class DownloadRequest(BaseModel):
    patient_id: str
    content_id: str
    access_reason: str = Field(min_length=1, max_length=500)


class ExportRequest(BaseModel):
    format: str = "json"
    filters: Dict[str, Any] = Field(default_factory=dict)
    requester_signature: str


class ComplianceReportRequest(BaseModel):
    report_type: str
    start_date: str
    end_date: str
    requester_signature: str
