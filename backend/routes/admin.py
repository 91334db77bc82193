from fastapi import APIRouter, HTTPException, Request, Depends, status, Query
from fastapi.responses import StreamingResponse
from typing import Optional
from middleware import admin_route_guard
from models import (
    AuditAction, ClientCreate, ClientUpdate, InviteMessage, LegacySignatureFlag,
    SignatureRequestCreate, UserRole,
)
from auth import validate_password_strength
from services.certificate_service import certificate_filename, render_certificate
from services.client_records import client_records
from services.identity_service import identity_resolver, normalize_identifier, portal_username
from services.portal_errors import NotFoundError, PortalError, ValidationError
from services.portal_session import submission_guard
from services.request_queue import request_queue
from utils.audit import create_audit_log, get_audit_logs_for_client
import io
import logging
import os

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/admin", tags=["admin"], dependencies=[Depends(admin_route_guard)])

PORTAL_PUBLIC_URL = os.getenv("PORTAL_PUBLIC_URL", "https://evansrenovation.fr")

# ClientUpdate field -> stored field name
CLIENT_FIELD_MAP = {
    "folder_id": "folderId",
    "quote_folder_id": "quoteFolderId",
    "notes": "notes",
    "status": "status",
    "project_value": "projectValue",
}


def build_invite_message(client_id: str) -> InviteMessage:
    """Onboarding message the admin pastes into WhatsApp or email."""
    username = portal_username(client_id)
    message = (
        "Hi! Here is the link to your personal client portal:\n\n"
        f"{PORTAL_PUBLIC_URL}\n"
        f"Username: {username}\n"
        "Password: (The one we discussed)\n\n"
        "You can find all your documents and quotes here."
    )
    return InviteMessage(client_id=client_id, username=username, message=message)


# ============================================
# CLIENTS
# ============================================

@router.get("/clients")
async def get_clients(request: Request, search: Optional[str] = Query(None)):
    """List client records, optionally filtered by identity substring (admin only)."""
    await admin_route_guard(request)

    try:
        records = await client_records.list_all(search)
        return {
            "clients": [r.to_summary() for r in records],
            "total": len(records),
            "search": search,
        }
    except (HTTPException, PortalError):
        raise
    except Exception as e:
        logger.error(f"Get clients error: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to load clients"
        )


@router.post("/clients", status_code=status.HTTP_201_CREATED)
async def create_client(request: Request, data: ClientCreate):
    """
    Add a client record.
    The identifier is normalized like a login; an initial password registers
    portal credentials for it.
    """
    user = await admin_route_guard(request)
    client_id = normalize_identifier(data.identifier)

    if data.password:
        is_valid, error_msg = validate_password_strength(data.password)
        if not is_valid:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=error_msg
            )

    record = await client_records.create(client_id, data.folder_id)

    if data.password:
        await identity_resolver.register_credentials(client_id, data.password, UserRole.ROLE_CLIENT)
        await create_audit_log(
            action=AuditAction.CREDENTIALS_REGISTERED,
            actor_role=UserRole.ROLE_ADMIN,
            actor_id=user["sub"],
            client_id=client_id,
        )

    await create_audit_log(
        action=AuditAction.CLIENT_CREATED,
        actor_role=UserRole.ROLE_ADMIN,
        actor_id=user["sub"],
        client_id=client_id,
        after_state={"folderId": record.folder_id},
    )
    logger.info(f"Admin {user['sub']} created client {client_id}")
    return {
        "client": record.to_summary(),
        "invite": build_invite_message(client_id).model_dump(),
    }


@router.get("/clients/{client_id}")
async def get_client_detail(request: Request, client_id: str):
    await admin_route_guard(request)
    record = await client_records.load(client_id)
    return {"client": record.to_summary()}


@router.patch("/clients/{client_id}")
async def update_client(request: Request, client_id: str, data: ClientUpdate):
    """
    Edit scalar client fields (admin only).
    Pending requests and signature history are never touched here.
    """
    user = await admin_route_guard(request)
    before = (await client_records.load(client_id)).model_dump(by_alias=True)

    update_data = {}
    before_state = {}
    after_state = {}
    for field, stored in CLIENT_FIELD_MAP.items():
        new_value = getattr(data, field)
        if new_value is None:
            continue
        if stored in ("folderId", "quoteFolderId"):
            new_value = new_value.strip()
        if stored == "folderId" and not new_value:
            raise ValidationError("A folder reference is required")
        if before.get(stored) != new_value:
            before_state[stored] = before.get(stored)
            after_state[stored] = new_value
            update_data[stored] = new_value

    if not update_data:
        return {"message": "No changes detected", "client_id": client_id}

    await client_records.save(client_id, update_data)
    await create_audit_log(
        action=AuditAction.CLIENT_UPDATED,
        actor_role=UserRole.ROLE_ADMIN,
        actor_id=user["sub"],
        client_id=client_id,
        before_state=before_state,
        after_state=after_state,
        metadata={"fields_changed": list(update_data.keys())},
    )
    logger.info(f"Admin {user['sub']} updated client {client_id}: {list(update_data.keys())}")
    return {
        "message": "Client updated successfully",
        "client_id": client_id,
        "changes": after_state,
    }


@router.delete("/clients/{client_id}")
async def delete_client(request: Request, client_id: str):
    """Delete the client record and unlink its portal credentials."""
    user = await admin_route_guard(request)
    await client_records.delete(client_id)
    await identity_resolver.remove_credentials(client_id)

    await create_audit_log(
        action=AuditAction.CLIENT_DELETED,
        actor_role=UserRole.ROLE_ADMIN,
        actor_id=user["sub"],
        client_id=client_id,
    )
    logger.info(f"Admin {user['sub']} deleted client {client_id}")
    return {"message": "Client deleted", "client_id": client_id}


@router.get("/clients/{client_id}/invite")
async def get_invite_message(request: Request, client_id: str):
    await admin_route_guard(request)
    await client_records.load(client_id)
    return build_invite_message(client_id).model_dump()


@router.get("/clients/{client_id}/audit-logs")
async def get_client_audit_logs(request: Request, client_id: str, limit: int = Query(50, ge=1, le=200)):
    """Recent audit trail of one client record (admin only)."""
    await admin_route_guard(request)
    logs = await get_audit_logs_for_client(client_id, limit=limit)
    return {"client_id": client_id, "logs": logs}


# ============================================
# SIGNATURE REQUESTS
# ============================================

@router.post("/clients/{client_id}/requests", status_code=status.HTTP_201_CREATED)
async def add_signature_request(request: Request, client_id: str, data: SignatureRequestCreate):
    """Queue a document for the client to sign (folder defaults to the client's primary folder)."""
    user = await admin_route_guard(request)
    record = await client_records.load(client_id)
    async with submission_guard.hold(user["sid"], f"add_request:{client_id}"):
        signature_request = await request_queue.add_request(record, data.name, data.folder_id)

    await create_audit_log(
        action=AuditAction.SIGNATURE_REQUESTED,
        actor_role=UserRole.ROLE_ADMIN,
        actor_id=user["sub"],
        client_id=client_id,
        resource_type="signature_request",
        resource_id=signature_request.id,
        metadata={"name": signature_request.name, "folder_id": signature_request.folder_id},
    )
    return {"request": signature_request.model_dump(by_alias=True)}


@router.delete("/clients/{client_id}/requests/{request_id}")
async def cancel_signature_request(request: Request, client_id: str, request_id: str):
    """Withdraw a pending request. Already-resolved requests are reported, not errors."""
    user = await admin_route_guard(request)
    record = await client_records.load(client_id)
    signature_request = record.find_request(request_id)
    if signature_request is None:
        return {"cancelled": False, "request_id": request_id}

    async with submission_guard.hold(user["sid"], f"cancel_request:{request_id}"):
        removed = await request_queue.cancel_request(record, signature_request)
    if removed:
        await create_audit_log(
            action=AuditAction.SIGNATURE_REQUEST_CANCELLED,
            actor_role=UserRole.ROLE_ADMIN,
            actor_id=user["sub"],
            client_id=client_id,
            resource_type="signature_request",
            resource_id=request_id,
            metadata={"name": signature_request.name},
        )
    return {"cancelled": removed, "request_id": request_id}


@router.put("/clients/{client_id}/signature-needed")
async def set_legacy_signature_flag(request: Request, client_id: str, data: LegacySignatureFlag):
    """Toggle the quote-folder signature flag of a pre-queue record."""
    user = await admin_route_guard(request)
    record = await client_records.load(client_id)
    quote_request_id = await request_queue.set_legacy_quote_flag(record, data.signature_needed)

    await create_audit_log(
        action=AuditAction.LEGACY_SIGNATURE_FLAG_SET,
        actor_role=UserRole.ROLE_ADMIN,
        actor_id=user["sub"],
        client_id=client_id,
        before_state={"signatureNeeded": record.signature_needed},
        after_state={"signatureNeeded": data.signature_needed, "quoteRequestId": quote_request_id},
    )
    return {
        "client_id": client_id,
        "signature_needed": data.signature_needed,
        "quote_request_id": quote_request_id,
    }


# ============================================
# CERTIFICATES
# ============================================

@router.get("/clients/{client_id}/signatures/{index}/certificate")
async def regenerate_certificate(request: Request, client_id: str, index: int):
    """Certificate of Signature for any history entry, legacy signature included."""
    user = await admin_route_guard(request)
    record = await client_records.load(client_id)
    if index < 0 or index >= len(record.signatures):
        raise NotFoundError("Signature not found")

    signature = record.signatures[index]
    pdf_bytes = render_certificate(client_id, signature)
    filename = certificate_filename(signature.signer, signature.doc_name or "Document")

    await create_audit_log(
        action=AuditAction.CERTIFICATE_GENERATED,
        actor_role=UserRole.ROLE_ADMIN,
        actor_id=user["sub"],
        client_id=client_id,
        resource_type="signature",
        resource_id=signature.doc_id,
        metadata={"index": index, "source": signature.source.value},
    )
    return StreamingResponse(
        io.BytesIO(pdf_bytes),
        media_type="application/pdf",
        headers={
            "Content-Disposition": f'attachment; filename="{filename}"'
        }
    )
