"""
Client Record Accessor - loads and persists per-client portal records.

Records live in the `clients` collection keyed by canonical identity (`_id`).
Scalar fields merge last-writer-wins via `$set`. The set-valued fields
(`signatureRequests`, `signatures`) are never overwritten as a whole; they
only change through `$addToSet`, `$pull` and `$push`, so concurrent admin and
client writes cannot clobber each other.

The read adapter (`normalize_record`) is the only place that knows about the
legacy single-value `signature` field.
"""
import logging
from typing import Any, Dict, List, Optional

from pymongo.errors import DuplicateKeyError, PyMongoError

from database import database
from models import (
    ClientRecord, SignatureRecord, SignatureRequest, SignatureSource,
    LEGACY_QUOTE_DOC_NAME, LEGACY_QUOTE_REQUEST_ID, utc_now_iso,
)
from services.portal_errors import (
    NotFoundError, RemoteReadError, RemoteWriteError, ValidationError,
)

logger = logging.getLogger(__name__)

# Fields `save` may merge. Everything else is either set-valued or immutable.
SCALAR_FIELDS = {
    "folderId", "quoteFolderId", "quoteRequestId", "notes", "status", "projectValue", "signatureNeeded",
}
SET_FIELDS = {"signatureRequests", "signatures", "signature"}


def normalize_record(doc: Dict[str, Any]) -> ClientRecord:
    """Build the internal ClientRecord from a raw `clients` document."""
    client_id = doc["_id"]
    history: List[SignatureRecord] = []

    legacy = doc.get("signature")
    if isinstance(legacy, dict) and legacy.get("image"):
        history.append(SignatureRecord(
            signer=legacy.get("signer") or client_id,
            signed_at=legacy.get("signedAt") or "",
            image=legacy["image"],
            doc_name=legacy.get("docName") or LEGACY_QUOTE_DOC_NAME,
            doc_id=legacy.get("docId") or LEGACY_QUOTE_REQUEST_ID,
            source=SignatureSource.LEGACY,
        ))

    for entry in doc.get("signatures") or []:
        history.append(SignatureRecord.model_validate(entry))

    fields = {k: v for k, v in doc.items() if k not in ("_id", "signature", "signatures")}
    # Pre-queue records may store the quote folder as "" and nulls for text fields.
    for key in ("notes", "status", "projectValue", "folderId"):
        if fields.get(key) is None:
            fields.pop(key, None)
    if not fields.get("quoteFolderId"):
        fields["quoteFolderId"] = None
    if fields.get("projectValue") is not None:
        fields["projectValue"] = str(fields["projectValue"])

    return ClientRecord(client_id=client_id, signatures=history, **fields)


class ClientRecordAccessor:
    """Reads and writes client records through set-safe update primitives."""

    def _collection(self):
        return database.get_db().clients

    async def load(self, client_id: str) -> ClientRecord:
        try:
            doc = await self._collection().find_one({"_id": client_id})
        except PyMongoError as e:
            logger.error(f"Failed to load client record {client_id}: {e}")
            raise RemoteReadError("Could not load your project. Please try again.")
        if not doc:
            raise NotFoundError(f"No client record for {client_id}")
        return normalize_record(doc)

    async def list_all(self, search: Optional[str] = None) -> List[ClientRecord]:
        """All client records, optionally filtered by identity substring (case-insensitive)."""
        try:
            docs = await self._collection().find({}).sort("_id", 1).to_list(length=None)
        except PyMongoError as e:
            logger.error(f"Failed to list client records: {e}")
            raise RemoteReadError("Could not load clients")
        records = [normalize_record(doc) for doc in docs]
        if search:
            term = search.strip().lower()
            records = [r for r in records if term in r.client_id.lower()]
        return records

    async def create(self, client_id: str, folder_id: str) -> ClientRecord:
        if not (folder_id or "").strip():
            raise ValidationError("A folder reference is required")
        doc = {
            "_id": client_id,
            "folderId": folder_id.strip(),
            "quoteFolderId": "",
            "signatureNeeded": False,
            "projectValue": "0",
            "status": "Lead",
            "notes": "",
            "createdAt": utc_now_iso(),
            "signatureRequests": [],
            "signatures": [],
        }
        try:
            await self._collection().insert_one(doc)
        except DuplicateKeyError:
            raise ValidationError(f"A client record for {client_id} already exists")
        except PyMongoError as e:
            logger.error(f"Failed to create client record {client_id}: {e}")
            raise RemoteWriteError("Failed to add client")
        logger.info(f"Client record created: {client_id}")
        return normalize_record(doc)

    async def save(self, client_id: str, partial: Dict[str, Any]) -> None:
        """Merge scalar fields into the record (last writer wins)."""
        touched_sets = SET_FIELDS & set(partial)
        if touched_sets:
            raise ValidationError(
                f"Set-valued fields cannot be saved directly: {', '.join(sorted(touched_sets))}"
            )
        unknown = set(partial) - SCALAR_FIELDS
        if unknown:
            raise ValidationError(f"Unknown client fields: {', '.join(sorted(unknown))}")
        if not partial:
            return
        await self._update(client_id, {"$set": partial}, action="save")

    async def delete(self, client_id: str) -> None:
        try:
            result = await self._collection().delete_one({"_id": client_id})
        except PyMongoError as e:
            logger.error(f"Failed to delete client record {client_id}: {e}")
            raise RemoteWriteError("Failed to delete client")
        if result.deleted_count == 0:
            raise NotFoundError(f"No client record for {client_id}")
        logger.info(f"Client record deleted: {client_id}")

    # ------------------------------------------------------------------
    # Set-valued fields
    # ------------------------------------------------------------------

    async def add_request(self, client_id: str, request: SignatureRequest) -> None:
        await self._update(
            client_id,
            {"$addToSet": {"signatureRequests": request.to_document()}},
            action="add_request",
        )

    async def remove_request(self, client_id: str, request_id: str) -> bool:
        """Pull a pending request by id. Returns False when nothing was pending under that id."""
        result = await self._update(
            client_id,
            {"$pull": {"signatureRequests": {"id": request_id}}},
            action="remove_request",
        )
        return result.modified_count > 0

    async def commit_signature(self, client_id: str, request_id: str, record: SignatureRecord) -> bool:
        """Append to history and remove from pending in one document update.

        The filter requires the request to still be pending, so the history
        append happens at most once per request even if the caller repeats the
        commit (e.g. after a client-side timeout). Returns False when the
        request was already resolved.
        """
        try:
            result = await self._collection().update_one(
                {"_id": client_id, "signatureRequests.id": request_id},
                {
                    "$push": {"signatures": record.to_document()},
                    "$pull": {"signatureRequests": {"id": request_id}},
                },
            )
        except PyMongoError as e:
            logger.error(f"Signature commit failed for {client_id}/{request_id}: {e}")
            raise RemoteWriteError("Your signature could not be saved. Please try again.")
        return result.modified_count > 0

    async def commit_legacy_signature(self, client_id: str, request_id: str, record: SignatureRecord) -> bool:
        """Legacy quote-folder sign: append to history and clear `signatureNeeded` together.

        Only matches while the flag is still raised for this quote request id.
        """
        quote_request_id = None if request_id == LEGACY_QUOTE_REQUEST_ID else request_id
        try:
            result = await self._collection().update_one(
                {"_id": client_id, "signatureNeeded": True, "quoteRequestId": quote_request_id},
                {
                    "$push": {"signatures": record.to_document()},
                    "$set": {"signatureNeeded": False},
                },
            )
        except PyMongoError as e:
            logger.error(f"Legacy signature commit failed for {client_id}: {e}")
            raise RemoteWriteError("Your signature could not be saved. Please try again.")
        return result.modified_count > 0

    async def _update(self, client_id: str, update: Dict[str, Any], action: str):
        try:
            result = await self._collection().update_one({"_id": client_id}, update)
        except PyMongoError as e:
            logger.error(f"Client record {action} failed for {client_id}: {e}")
            raise RemoteWriteError("The change could not be saved. Please try again.")
        if result.matched_count == 0:
            raise NotFoundError(f"No client record for {client_id}")
        return result


client_records = ClientRecordAccessor()
