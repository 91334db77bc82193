"""
View Router - decides which document folder the portal viewer shows.

States:
    MAIN            the client's primary folder
    REQUEST(R)      the folder of pending signature request R
    QUOTE_FOLDER    legacy: the quote folder of a pre-queue record awaiting signature

The router never inspects folder contents; it only forwards references.
"""
import os
import logging
from typing import Any, Dict, Optional

from models import ClientRecord, SignatureRequest, ViewState
from services.portal_errors import ValidationError

logger = logging.getLogger(__name__)

FOLDER_VIEWER_URL_TEMPLATE = os.getenv(
    "FOLDER_VIEWER_URL_TEMPLATE",
    "https://drive.google.com/embeddedfolderview?id={folder_id}#grid",
)


def viewer_url(folder_id: Optional[str]) -> Optional[str]:
    if not folder_id:
        return None
    return FOLDER_VIEWER_URL_TEMPLATE.format(folder_id=folder_id)


class ViewRouter:

    def __init__(self, client: ClientRecord):
        self.primary_folder_id = client.folder_id
        self.state = ViewState.MAIN
        self.request: Optional[SignatureRequest] = None
        self.active_folder_id = client.folder_id

        legacy = client.legacy_quote_request()
        if legacy is not None:
            self.state = ViewState.QUOTE_FOLDER
            self.request = legacy
            self.active_folder_id = legacy.folder_id

    def open_request(self, request: SignatureRequest) -> None:
        if self.state != ViewState.MAIN:
            raise ValidationError("Return to the main folder before opening another document")
        self.state = ViewState.REQUEST
        self.request = request
        self.active_folder_id = request.folder_id

    def back_to_main(self) -> None:
        self.state = ViewState.MAIN
        self.request = None
        self.active_folder_id = self.primary_folder_id

    def on_signed(self, request_id: str) -> None:
        """A request was signed; leave its folder if it is the one on screen."""
        if self.request is None or self.request.id != request_id:
            return
        if self.state in (ViewState.REQUEST, ViewState.QUOTE_FOLDER):
            logger.debug(f"Request {request_id} signed, returning to main folder")
            self.back_to_main()

    def refresh_primary(self, client: ClientRecord) -> None:
        """Pick up an admin edit of the primary folder reference."""
        self.primary_folder_id = client.folder_id
        if self.state == ViewState.MAIN:
            self.active_folder_id = client.folder_id

    def snapshot(self) -> Dict[str, Any]:
        return {
            "state": self.state.value,
            "folder_id": self.active_folder_id,
            "viewer_url": viewer_url(self.active_folder_id),
            "request": self.request.model_dump(by_alias=True) if self.request else None,
        }
