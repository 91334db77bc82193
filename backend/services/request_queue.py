"""
Request Queue Manager - the pending signature-request set of each client.

Requests are created by the admin console, resolved by exactly one of
cancel or sign, and always matched by id (display names may repeat).
"""
import logging
import secrets
import threading
import time
from typing import List, Optional

from models import ClientRecord, SignatureRequest
from services.client_records import client_records
from services.portal_errors import NotFoundError, ValidationError

logger = logging.getLogger(__name__)


class RequestIdGenerator:
    """Time-derived ids: `<epoch millis>-<8 hex>`.

    Millis never repeat or go backwards within a process; the random suffix
    separates ids minted in the same millisecond by different processes.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._last_ms = 0

    def next_id(self) -> str:
        with self._lock:
            now_ms = int(time.time() * 1000)
            if now_ms <= self._last_ms:
                now_ms = self._last_ms + 1
            self._last_ms = now_ms
        return f"{now_ms}-{secrets.token_hex(4)}"


class RequestQueueManager:

    def __init__(self, id_generator: Optional[RequestIdGenerator] = None):
        self.ids = id_generator or RequestIdGenerator()

    async def add_request(
        self,
        client: ClientRecord,
        name: str,
        folder_id: Optional[str] = None,
    ) -> SignatureRequest:
        """Queue a new signature request; the folder defaults to the client's primary folder."""
        clean_name = (name or "").strip()
        if not clean_name:
            raise ValidationError("A document name is required")

        target_folder = (folder_id or "").strip() or client.folder_id
        if not target_folder:
            raise ValidationError("The client has no folder to sign from")

        request = SignatureRequest(id=self.ids.next_id(), name=clean_name, folder_id=target_folder)
        await client_records.add_request(client.client_id, request)
        logger.info(f"Signature request {request.id} ({clean_name!r}) queued for {client.client_id}")
        return request

    async def cancel_request(self, client: ClientRecord, request: SignatureRequest) -> bool:
        """Remove a pending request by id.

        Returns False when nothing was removed: the request may already have
        been signed or cancelled concurrently, which is not an error.
        """
        try:
            removed = await client_records.remove_request(client.client_id, request.id)
        except NotFoundError:
            logger.info(f"Cancel of {request.id}: client {client.client_id} no longer exists")
            return False
        if not removed:
            logger.info(f"Cancel of {request.id} for {client.client_id}: already resolved")
        return removed

    def list_pending(self, client: ClientRecord) -> List[SignatureRequest]:
        """Pending requests in insertion order."""
        return list(client.signature_requests)

    async def set_legacy_quote_flag(self, client: ClientRecord, needed: bool) -> Optional[str]:
        """Raise or lower the quote-folder signature flag of a pre-queue record.

        Raising it mints a fresh quote request id unless one is already
        pending, so a signed quote id never comes back as pending.
        Returns the pending quote request id, if any.
        """
        if not needed:
            await client_records.save(client.client_id, {"signatureNeeded": False})
            return None

        pending = client.legacy_quote_request()
        if pending is not None:
            return pending.id

        request_id = self.ids.next_id()
        await client_records.save(
            client.client_id, {"signatureNeeded": True, "quoteRequestId": request_id},
        )
        logger.info(f"Quote signature {request_id} flagged for {client.client_id}")
        return request_id


request_queue = RequestQueueManager()
