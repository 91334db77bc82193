from pydantic import BaseModel, Field, ConfigDict, field_validator
from typing import Optional, Dict, Any, List, Tuple
from datetime import datetime, timezone
from enum import Enum
import uuid

# Request id of a pre-queue "quote folder" signature that was flagged before
# quote request ids were minted per flag.
LEGACY_QUOTE_REQUEST_ID = "legacy-quote"
LEGACY_QUOTE_DOC_NAME = "Quote"


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()

# ============================================================================
# ENUMS (System Constants)
# ============================================================================

class UserRole(str, Enum):
    ROLE_CLIENT = "ROLE_CLIENT"
    ROLE_ADMIN = "ROLE_ADMIN"

class UserStatus(str, Enum):
    ACTIVE = "ACTIVE"
    DISABLED = "DISABLED"

class ViewState(str, Enum):
    MAIN = "MAIN"
    REQUEST = "REQUEST"
    QUOTE_FOLDER = "QUOTE_FOLDER"  # Legacy single-pending records

class SignatureSource(str, Enum):
    HISTORY = "history"
    LEGACY = "legacy"  # Read from the single-value `signature` field

class AuditAction(str, Enum):
    # Auth
    USER_LOGIN_SUCCESS = "USER_LOGIN_SUCCESS"
    USER_LOGIN_FAILED = "USER_LOGIN_FAILED"
    USER_LOGOUT = "USER_LOGOUT"
    CREDENTIALS_REGISTERED = "CREDENTIALS_REGISTERED"

    # Client records
    CLIENT_CREATED = "CLIENT_CREATED"
    CLIENT_UPDATED = "CLIENT_UPDATED"
    CLIENT_DELETED = "CLIENT_DELETED"

    # Signatures
    SIGNATURE_REQUESTED = "SIGNATURE_REQUESTED"
    SIGNATURE_REQUEST_CANCELLED = "SIGNATURE_REQUEST_CANCELLED"
    DOCUMENT_SIGNED = "DOCUMENT_SIGNED"
    LEGACY_SIGNATURE_FLAG_SET = "LEGACY_SIGNATURE_FLAG_SET"
    CERTIFICATE_GENERATED = "CERTIFICATE_GENERATED"

# ============================================================================
# CORE MODELS
# ============================================================================

class Identity(BaseModel):
    """Canonical identity of the person behind a portal session."""
    model_config = ConfigDict(extra="ignore")

    email: str
    role: UserRole = UserRole.ROLE_CLIENT

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ROLE_ADMIN


class SignatureRequest(BaseModel):
    """A named, pending ask for a client to sign the documents in a folder."""
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    id: str
    name: str
    folder_id: str = Field(alias="folderId")
    created_at: str = Field(default_factory=utc_now_iso, alias="createdAt")

    def to_document(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True)


class SignatureRecord(BaseModel):
    """One immutable entry of a client's signature history."""
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    signer: str
    signed_at: str = Field(alias="signedAt")
    image: str  # PNG data URL
    doc_name: Optional[str] = Field(default=None, alias="docName")
    doc_id: Optional[str] = Field(default=None, alias="docId")
    source: SignatureSource = SignatureSource.HISTORY

    def to_document(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude={"source"})


class ClientRecord(BaseModel):
    """Normalized view of a `clients` document.

    Built only by the read adapter in services.client_records; legacy fields
    are already folded in (the single `signature` is the first history entry).
    """
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    client_id: str
    folder_id: str = Field(default="", alias="folderId")
    quote_folder_id: Optional[str] = Field(default=None, alias="quoteFolderId")
    quote_request_id: Optional[str] = Field(default=None, alias="quoteRequestId")
    notes: str = ""
    status: str = "Lead"
    project_value: str = Field(default="0", alias="projectValue")
    created_at: Optional[str] = Field(default=None, alias="createdAt")
    signature_requests: List[SignatureRequest] = Field(default_factory=list, alias="signatureRequests")
    signatures: List[SignatureRecord] = Field(default_factory=list)
    signature_needed: bool = Field(default=False, alias="signatureNeeded")

    def legacy_quote_request(self) -> Optional[SignatureRequest]:
        """The pending quote-folder signature of a pre-queue record, if any.

        A quote request whose id already appears in the history was signed;
        re-raising the flag needs a fresh `quoteRequestId`.
        """
        if not (self.signature_needed and self.quote_folder_id):
            return None
        request_id = self.quote_request_id or LEGACY_QUOTE_REQUEST_ID
        if any(s.doc_id == request_id for s in self.signatures):
            return None
        return SignatureRequest(
            id=request_id,
            name=LEGACY_QUOTE_DOC_NAME,
            folder_id=self.quote_folder_id,
            created_at=self.created_at or "",
        )

    def is_legacy_quote(self, request_id: str) -> bool:
        legacy = self.legacy_quote_request()
        return legacy is not None and legacy.id == request_id

    def find_request(self, request_id: str) -> Optional[SignatureRequest]:
        for request in self.signature_requests:
            if request.id == request_id:
                return request
        legacy = self.legacy_quote_request()
        if legacy and legacy.id == request_id:
            return legacy
        return None

    def to_summary(self) -> Dict[str, Any]:
        data = self.model_dump(by_alias=True, exclude={"signatures"})
        data["signatures"] = [
            {k: v for k, v in s.model_dump(by_alias=True).items() if k != "image"}
            for s in self.signatures
        ]
        return data


class PortalUser(BaseModel):
    model_config = ConfigDict(extra="ignore")

    portal_user_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    auth_email: str
    password_hash: Optional[str] = None
    role: UserRole = UserRole.ROLE_CLIENT
    status: UserStatus = UserStatus.ACTIVE
    last_login: Optional[str] = None
    created_at: str = Field(default_factory=utc_now_iso)


class AuditLog(BaseModel):
    model_config = ConfigDict(extra="ignore")

    audit_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    action: AuditAction
    actor_role: Optional[UserRole] = None
    actor_id: Optional[str] = None
    client_id: Optional[str] = None
    resource_type: Optional[str] = None
    resource_id: Optional[str] = None
    before_state: Optional[Dict[str, Any]] = None
    after_state: Optional[Dict[str, Any]] = None
    metadata: Optional[Dict[str, Any]] = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

# ============================================================================
# REQUEST/RESPONSE MODELS
# ============================================================================

class LoginRequest(BaseModel):
    identifier: str  # Username or full email
    password: str

class FederatedLoginRequest(BaseModel):
    assertion: str

class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    user: Dict[str, Any]

class ClientCreate(BaseModel):
    identifier: str
    folder_id: str
    password: Optional[str] = None

class ClientUpdate(BaseModel):
    folder_id: Optional[str] = None
    quote_folder_id: Optional[str] = None
    notes: Optional[str] = None
    status: Optional[str] = None
    project_value: Optional[str] = None

    @field_validator("project_value")
    @classmethod
    def project_value_is_number(cls, v):
        if v is None:
            return v
        try:
            float(v)
        except ValueError:
            raise ValueError("project_value must be a number")
        return v

class LegacySignatureFlag(BaseModel):
    signature_needed: bool

class SignatureRequestCreate(BaseModel):
    name: str
    folder_id: Optional[str] = None

class StrokesPayload(BaseModel):
    strokes: List[List[Tuple[float, float]]]

class SignatureCommitRequest(BaseModel):
    image: Optional[str] = None  # PNG data URL; rendered from strokes when omitted

class InviteMessage(BaseModel):
    client_id: str
    username: str
    message: str
