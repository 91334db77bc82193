"""
Portal sessions - per-session client context for the portal flow.

A session is established at portal entry (after sign-in) and cleared at
sign-out, which also revokes the token that carried it. It carries the identity explicitly into every core operation and
holds the ephemeral state that is never persisted: the View Router position
and an open signature capture.
"""
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Sequence, Set, Tuple

from pymongo.errors import PyMongoError

from auth import JWT_EXPIRATION_HOURS
from database import database
from models import ClientRecord, Identity, SignatureRecord, SignatureRequest
from services.client_records import client_records
from services.portal_errors import (
    AccessDeniedError, DuplicateSubmissionError, NotFoundError, RemoteReadError, RemoteWriteError,
    ValidationError,
)
from services.request_queue import request_queue
from services.signature_capture import CaptureSurface, signature_capture
from services.view_router import ViewRouter

logger = logging.getLogger(__name__)


class SubmissionGuard:
    """Rejects a second submission of an action while the first is still in flight."""

    def __init__(self):
        self._in_flight: Set[Tuple[str, str]] = set()

    @asynccontextmanager
    async def hold(self, scope: str, action: str):
        key = (scope, action)
        if key in self._in_flight:
            logger.info(f"Duplicate submission of {action} for {scope} rejected")
            raise DuplicateSubmissionError("This action is already in progress")
        self._in_flight.add(key)
        try:
            yield
        finally:
            self._in_flight.discard(key)


submission_guard = SubmissionGuard()


class PortalSession:

    def __init__(self, session_id: str, identity: Identity, record: ClientRecord):
        self.session_id = session_id
        self.identity = identity
        self.record = record
        self.view = ViewRouter(record)
        self.capture: Optional[CaptureSurface] = None
        self.last_seen = datetime.now(timezone.utc)

    @property
    def client_id(self) -> str:
        return self.record.client_id

    def pending_requests(self) -> List[SignatureRequest]:
        """Queued requests, preceded by the legacy quote request of a pre-queue record."""
        legacy = self.record.legacy_quote_request()
        queued = request_queue.list_pending(self.record)
        return ([legacy] if legacy else []) + queued

    def _pending_request(self, request_id: str) -> SignatureRequest:
        request = self.record.find_request(request_id)
        if request is None:
            raise NotFoundError("This document no longer needs a signature")
        return request

    async def refresh(self) -> ClientRecord:
        """Reload the record; leave any view or capture whose request was resolved elsewhere."""
        self.record = await client_records.load(self.client_id)
        self.view.refresh_primary(self.record)
        open_request = self.view.request
        if open_request is not None and self.record.find_request(open_request.id) is None:
            self.view.back_to_main()
        if self.capture is not None and self.record.find_request(self.capture.request.id) is None:
            self.capture.cancel()
            self.capture = None
        return self.record

    # --- View -----------------------------------------------------------

    def open_request(self, request_id: str) -> None:
        self.view.open_request(self._pending_request(request_id))

    def back_to_main(self) -> None:
        if self.capture is not None:
            self.cancel_capture()
        self.view.back_to_main()

    # --- Capture --------------------------------------------------------

    def begin_capture(self, request_id: str) -> CaptureSurface:
        request = self._pending_request(request_id)
        if self.capture is not None and not self.capture.closed:
            if self.capture.request.id == request_id:
                return self.capture
            self.capture.cancel()
        self.capture = signature_capture.begin_capture(request)
        return self.capture

    def current_capture(self) -> CaptureSurface:
        if self.capture is None or self.capture.closed:
            raise ValidationError("No signature capture is open")
        return self.capture

    def add_strokes(self, strokes: Sequence[Sequence[Tuple[float, float]]]) -> None:
        self.current_capture().add_strokes(strokes)

    def clear_capture(self) -> None:
        self.current_capture().clear()

    def cancel_capture(self) -> None:
        if self.capture is not None:
            self.capture.cancel()
            self.capture = None

    async def commit_capture(self, raster_image: Optional[str] = None) -> Optional[SignatureRecord]:
        """Sign the captured request. Local state advances only after the store acknowledges."""
        surface = self.current_capture()
        async with submission_guard.hold(self.session_id, "sign"):
            record = await signature_capture.commit(
                self.record, surface, signer=self.identity.email, raster_image=raster_image,
            )
        request_id = surface.request.id
        self._apply_resolution(request_id, record)
        self.capture = None
        self.view.on_signed(request_id)
        return record

    def _apply_resolution(self, request_id: str, record: Optional[SignatureRecord]) -> None:
        if self.record.is_legacy_quote(request_id):
            self.record.signature_needed = False
        else:
            self.record.signature_requests = [
                r for r in self.record.signature_requests if r.id != request_id
            ]
        if record is not None:
            self.record.signatures.append(record)

    # --- Certificates ---------------------------------------------------

    def signature_at(self, index: int) -> SignatureRecord:
        if index < 0 or index >= len(self.record.signatures):
            raise NotFoundError("Signature not found")
        return self.record.signatures[index]

    def snapshot(self) -> Dict:
        return {
            "client_id": self.client_id,
            "view": self.view.snapshot(),
            "pending_requests": [r.model_dump(by_alias=True) for r in self.pending_requests()],
            "capture_open": self.capture is not None and not self.capture.closed,
        }


class PortalSessionStore:
    """In-process registry of live portal sessions, keyed by the token's session id."""

    def __init__(self, idle_timeout: timedelta = timedelta(hours=JWT_EXPIRATION_HOURS)):
        self._sessions: Dict[str, PortalSession] = {}
        self.idle_timeout = idle_timeout

    async def enter(self, session_id: str, identity: Identity) -> PortalSession:
        """Return the live session, establishing it (record load + initial view) on first use."""
        self._prune()
        session = self._sessions.get(session_id)
        if session is not None and session.identity.email == identity.email:
            session.last_seen = datetime.now(timezone.utc)
            return session

        try:
            record = await client_records.load(identity.email)
        except NotFoundError:
            logger.info(f"Portal entry denied for {identity.email}: no client record")
            raise AccessDeniedError("Access denied: no project found for this account")
        session = PortalSession(session_id, identity, record)
        self._sessions[session_id] = session
        logger.info(f"Portal session established for {identity.email} (view {session.view.state.value})")
        return session

    def get(self, session_id: str) -> Optional[PortalSession]:
        return self._sessions.get(session_id)

    async def sign_out(self, session_id: str, expires_at: Optional[datetime] = None) -> None:
        """Clear the session and revoke its token until the token would have expired anyway."""
        self._drop(session_id)
        expires_at = expires_at or datetime.now(timezone.utc) + timedelta(hours=JWT_EXPIRATION_HOURS)
        try:
            await database.get_db().revoked_sessions.update_one(
                {"_id": session_id},
                {"$set": {"revoked_at": datetime.now(timezone.utc), "expires_at": expires_at}},
                upsert=True,
            )
        except PyMongoError as e:
            logger.error(f"Failed to revoke session {session_id}: {e}")
            raise RemoteWriteError("Sign-out could not be completed. Please try again.")

    async def is_revoked(self, session_id: str) -> bool:
        try:
            doc = await database.get_db().revoked_sessions.find_one({"_id": session_id})
        except PyMongoError as e:
            logger.error(f"Failed to check session {session_id}: {e}")
            raise RemoteReadError("Could not verify your session. Please try again.")
        return doc is not None

    def _drop(self, session_id: str) -> None:
        session = self._sessions.pop(session_id, None)
        if session is not None:
            session.cancel_capture()
            logger.info(f"Portal session cleared for {session.identity.email}")

    def _prune(self) -> None:
        cutoff = datetime.now(timezone.utc) - self.idle_timeout
        stale = [sid for sid, s in self._sessions.items() if s.last_seen < cutoff]
        for sid in stale:
            self._drop(sid)


portal_sessions = PortalSessionStore()
