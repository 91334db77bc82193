"""
Portal Routes - the signed-in client's view of their project.

Every route works on the caller's own PortalSession: the record loaded at
entry, the View Router position and at most one open signature capture.
"""
import io
import logging

from fastapi import APIRouter, Depends
from fastapi.responses import StreamingResponse

from middleware import client_route_guard, identity_from_token
from models import AuditAction, StrokesPayload, SignatureCommitRequest
from services.certificate_service import certificate_filename, render_certificate
from services.portal_session import PortalSession, portal_sessions
from utils.audit import create_audit_log

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/portal", tags=["portal"])


async def get_portal_session(current_user: dict = Depends(client_route_guard)) -> PortalSession:
    """Establish (or resume) the caller's portal session."""
    return await portal_sessions.enter(current_user["sid"], identity_from_token(current_user))


# ============================================
# VIEW
# ============================================

@router.get("/view")
async def get_view(session: PortalSession = Depends(get_portal_session)):
    """Current document view, refreshed against the stored record."""
    await session.refresh()
    return session.snapshot()


@router.post("/view/requests/{request_id}")
async def open_request(request_id: str, session: PortalSession = Depends(get_portal_session)):
    """Show the folder of a pending signature request."""
    session.open_request(request_id)
    return session.snapshot()


@router.post("/view/main")
async def back_to_main(session: PortalSession = Depends(get_portal_session)):
    session.back_to_main()
    return session.snapshot()


# ============================================
# SIGNATURE REQUESTS
# ============================================

@router.get("/requests")
async def list_requests(session: PortalSession = Depends(get_portal_session)):
    await session.refresh()
    return {
        "requests": [r.model_dump(by_alias=True) for r in session.pending_requests()],
    }


@router.post("/requests/{request_id}/capture")
async def begin_capture(request_id: str, session: PortalSession = Depends(get_portal_session)):
    """Open a signature pad for one pending request."""
    surface = session.begin_capture(request_id)
    return {
        "request": surface.request.model_dump(by_alias=True),
        "canvas": {"width": surface.size[0], "height": surface.size[1]},
    }


# ============================================
# CAPTURE
# ============================================

@router.post("/capture/strokes")
async def add_strokes(payload: StrokesPayload, session: PortalSession = Depends(get_portal_session)):
    session.add_strokes(payload.strokes)
    surface = session.current_capture()
    return {"request_id": surface.request.id, "stroke_count": len(surface.strokes)}


@router.post("/capture/clear")
async def clear_capture(session: PortalSession = Depends(get_portal_session)):
    session.clear_capture()
    return {"request_id": session.current_capture().request.id, "stroke_count": 0}


@router.delete("/capture")
async def cancel_capture(session: PortalSession = Depends(get_portal_session)):
    """Discard the open capture; nothing is written."""
    session.cancel_capture()
    return {"message": "Signature capture cancelled"}


@router.post("/capture/commit")
async def commit_capture(
    payload: SignatureCommitRequest,
    session: PortalSession = Depends(get_portal_session),
):
    """
    Sign the request the capture was opened for.
    The request leaves the pending set and joins the history in one write.
    """
    request = session.current_capture().request
    record = await session.commit_capture(payload.image)

    if record is None:
        return {
            "signed": False,
            "message": "This document was already signed or withdrawn",
            "view": session.view.snapshot(),
        }

    await create_audit_log(
        action=AuditAction.DOCUMENT_SIGNED,
        actor_role=session.identity.role,
        actor_id=session.identity.email,
        client_id=session.client_id,
        resource_type="signature_request",
        resource_id=request.id,
        metadata={"doc_name": request.name, "signed_at": record.signed_at},
    )
    return {
        "signed": True,
        "signature_index": len(session.record.signatures) - 1,
        "signature": {k: v for k, v in record.model_dump(by_alias=True).items() if k != "image"},
        "view": session.view.snapshot(),
    }


# ============================================
# SIGNATURE HISTORY
# ============================================

@router.get("/signatures")
async def list_signatures(session: PortalSession = Depends(get_portal_session)):
    await session.refresh()
    return {"signatures": session.record.to_summary()["signatures"]}


@router.get("/signatures/{index}/certificate")
async def download_certificate(index: int, session: PortalSession = Depends(get_portal_session)):
    """Certificate of Signature PDF for one history entry."""
    await session.refresh()
    record = session.signature_at(index)
    pdf_bytes = render_certificate(session.client_id, record)
    filename = certificate_filename(record.signer, record.doc_name or "Document")

    await create_audit_log(
        action=AuditAction.CERTIFICATE_GENERATED,
        actor_role=session.identity.role,
        actor_id=session.identity.email,
        client_id=session.client_id,
        resource_type="signature",
        resource_id=record.doc_id,
        metadata={"index": index},
    )
    return StreamingResponse(
        io.BytesIO(pdf_bytes),
        media_type="application/pdf",
        headers={
            "Content-Disposition": f'attachment; filename="{filename}"'
        }
    )
