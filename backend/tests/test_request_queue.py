"""
Request Queue Manager: id minting, add/cancel semantics and ordering.
"""
import re

import pytest

from models import SignatureRequest
from services.client_records import client_records
from services.portal_errors import ValidationError
from services.request_queue import RequestIdGenerator, request_queue

CLIENT_ID = "smith@evans-portal.com"


class TestRequestIds:

    def test_ids_are_unique_and_time_ordered(self):
        gen = RequestIdGenerator()
        ids = [gen.next_id() for _ in range(200)]

        assert len(set(ids)) == 200
        millis = [int(i.split("-")[0]) for i in ids]
        assert millis == sorted(millis)
        assert all(re.fullmatch(r"\d+-[0-9a-f]{8}", i) for i in ids)


class TestAddRequest:

    @pytest.mark.asyncio
    async def test_add_n_requests_keeps_insertion_order(self, fake_db, make_client_doc):
        fake_db.clients.seed(make_client_doc())
        client = await client_records.load(CLIENT_ID)

        names = ["Quote", "Plans", "Quote"]
        added = [await request_queue.add_request(client, name) for name in names]

        pending = request_queue.list_pending(await client_records.load(CLIENT_ID))
        assert [r.id for r in pending] == [r.id for r in added]
        assert [r.name for r in pending] == names
        assert all(r.folder_id == "F1" for r in pending)

    @pytest.mark.asyncio
    async def test_explicit_folder_is_kept(self, fake_db, make_client_doc):
        fake_db.clients.seed(make_client_doc())
        client = await client_records.load(CLIENT_ID)

        request = await request_queue.add_request(client, "Deck Quote", "F2")
        assert request.folder_id == "F2"

    @pytest.mark.asyncio
    async def test_blank_name_makes_no_remote_call(self, fake_db, make_client_doc):
        fake_db.clients.seed(make_client_doc())
        client = await client_records.load(CLIENT_ID)

        with pytest.raises(ValidationError):
            await request_queue.add_request(client, "   ")
        assert fake_db.clients.write_calls == 0


class TestCancelRequest:

    @pytest.mark.asyncio
    async def test_cancel_one_of_n(self, fake_db, make_client_doc):
        fake_db.clients.seed(make_client_doc())
        client = await client_records.load(CLIENT_ID)
        added = [await request_queue.add_request(client, f"Doc {i}") for i in range(3)]

        removed = await request_queue.cancel_request(client, added[1])

        pending = request_queue.list_pending(await client_records.load(CLIENT_ID))
        assert removed is True
        assert [r.id for r in pending] == [added[0].id, added[2].id]

    @pytest.mark.asyncio
    async def test_remaining_set_does_not_depend_on_cancel_order(self, fake_db, make_client_doc):
        remaining = []
        for order in ((0, 2), (2, 0)):
            fake_db.clients.docs.clear()
            fake_db.clients.seed(make_client_doc())
            client = await client_records.load(CLIENT_ID)
            added = [await request_queue.add_request(client, "Quote") for _ in range(4)]
            for index in order:
                await request_queue.cancel_request(client, added[index])
            pending = request_queue.list_pending(await client_records.load(CLIENT_ID))
            remaining.append([r.id for r in pending])
            assert remaining[-1] == [added[1].id, added[3].id]
        assert len(remaining) == 2

    @pytest.mark.asyncio
    async def test_cancel_by_id_leaves_history_alone(self, fake_db, make_client_doc):
        fake_db.clients.seed(make_client_doc(
            signatureRequests=[{"id": "1700000000000", "name": "Quote", "folderId": "F2", "createdAt": "x"}],
            signatures=[{
                "signer": CLIENT_ID, "signedAt": "2023-11-01T09:00:00+00:00",
                "image": "data:image/png;base64,AAAA", "docName": "Plans", "docId": "1690000000000",
            }],
        ))
        client = await client_records.load(CLIENT_ID)

        await request_queue.cancel_request(client, client.find_request("1700000000000"))

        record = await client_records.load(CLIENT_ID)
        assert record.signature_requests == []
        assert len(record.signatures) == 1

    @pytest.mark.asyncio
    async def test_cancel_missing_request_is_noop(self, fake_db, make_client_doc):
        fake_db.clients.seed(make_client_doc())
        client = await client_records.load(CLIENT_ID)
        ghost = SignatureRequest(id="123-deadbeef", name="Gone", folder_id="F1")

        assert await request_queue.cancel_request(client, ghost) is False

    @pytest.mark.asyncio
    async def test_cancel_for_deleted_client_is_noop(self, fake_db, make_client_doc):
        fake_db.clients.seed(make_client_doc())
        client = await client_records.load(CLIENT_ID)
        request = await request_queue.add_request(client, "Quote")
        await client_records.delete(CLIENT_ID)

        assert await request_queue.cancel_request(client, request) is False
