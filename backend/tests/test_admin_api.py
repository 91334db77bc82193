"""
Admin console routes: client CRUD, signature requests, legacy flag, certificates, invites.
"""
import pytest

CLIENT_ID = "smith@evans-portal.com"


@pytest.fixture
def admin(client, fake_db, make_headers):
    return client, fake_db, make_headers("boss@evansreno.com", role="ROLE_ADMIN", sid="admin-sess")


class TestAdminGuard:

    def test_client_token_is_forbidden(self, client, fake_db, make_headers):
        assert client.get("/api/admin/clients", headers=make_headers()).status_code == 403

    def test_missing_token_is_unauthorized(self, client):
        assert client.get("/api/admin/clients").status_code == 401


class TestClientManagement:

    def test_create_normalizes_identifier_and_registers_password(self, admin):
        client, fake_db, headers = admin

        response = client.post(
            "/api/admin/clients",
            json={"identifier": "smith", "folder_id": "F1", "password": "Welcome123"},
            headers=headers,
        )

        assert response.status_code == 201
        data = response.json()
        assert data["client"]["client_id"] == CLIENT_ID
        assert data["invite"]["username"] == "smith"
        assert "Username: smith" in data["invite"]["message"]
        assert CLIENT_ID in fake_db.clients.docs
        query = fake_db.portal_users.update_one.call_args[0][0]
        assert query == {"auth_email": CLIENT_ID}

    def test_weak_password_rejected_before_create(self, admin):
        client, fake_db, headers = admin
        response = client.post(
            "/api/admin/clients",
            json={"identifier": "smith", "folder_id": "F1", "password": "short"},
            headers=headers,
        )
        assert response.status_code == 400
        assert fake_db.clients.docs == {}

    def test_duplicate_client_rejected(self, admin, make_client_doc):
        client, fake_db, headers = admin
        fake_db.clients.seed(make_client_doc())
        response = client.post(
            "/api/admin/clients", json={"identifier": "smith", "folder_id": "F1"}, headers=headers,
        )
        assert response.status_code == 400

    def test_search_is_case_insensitive(self, admin, make_client_doc):
        client, fake_db, headers = admin
        fake_db.clients.seed(make_client_doc("smith@evans-portal.com"))
        fake_db.clients.seed(make_client_doc("jones@evans-portal.com"))

        data = client.get("/api/admin/clients?search=JONES", headers=headers).json()
        assert [c["client_id"] for c in data["clients"]] == ["jones@evans-portal.com"]

    def test_edit_scalars_keeps_pending_requests(self, admin, make_client_doc):
        client, fake_db, headers = admin
        fake_db.clients.seed(make_client_doc(signatureRequests=[
            {"id": "R1", "name": "Quote", "folderId": "F1", "createdAt": "x"},
        ]))

        response = client.patch(
            f"/api/admin/clients/{CLIENT_ID}",
            json={"notes": "Kitchen too", "project_value": "15000"},
            headers=headers,
        )

        assert response.status_code == 200
        stored = fake_db.clients.docs[CLIENT_ID]
        assert stored["notes"] == "Kitchen too"
        assert stored["projectValue"] == "15000"
        assert [r["id"] for r in stored["signatureRequests"]] == ["R1"]

    def test_blank_primary_folder_rejected(self, admin, make_client_doc):
        client, fake_db, headers = admin
        fake_db.clients.seed(make_client_doc())
        response = client.patch(
            f"/api/admin/clients/{CLIENT_ID}", json={"folder_id": "   "}, headers=headers,
        )
        assert response.status_code == 400
        assert response.json()["error_code"] == "VALIDATION_ERROR"
        assert fake_db.clients.docs[CLIENT_ID]["folderId"] == "F1"

    def test_non_numeric_project_value_rejected(self, admin, make_client_doc):
        client, fake_db, headers = admin
        fake_db.clients.seed(make_client_doc())
        response = client.patch(
            f"/api/admin/clients/{CLIENT_ID}", json={"project_value": "lots"}, headers=headers,
        )
        assert response.status_code == 422

    def test_delete_unlinks_credentials(self, admin, make_client_doc):
        client, fake_db, headers = admin
        fake_db.clients.seed(make_client_doc())

        assert client.delete(f"/api/admin/clients/{CLIENT_ID}", headers=headers).status_code == 200
        assert CLIENT_ID not in fake_db.clients.docs
        fake_db.portal_users.delete_one.assert_awaited_with({"auth_email": CLIENT_ID})

    def test_invite_message_uses_public_url(self, admin, make_client_doc):
        client, fake_db, headers = admin
        fake_db.clients.seed(make_client_doc())

        invite = client.get(f"/api/admin/clients/{CLIENT_ID}/invite", headers=headers).json()
        from routes.admin import PORTAL_PUBLIC_URL
        assert PORTAL_PUBLIC_URL in invite["message"]


class TestSignatureRequests:

    def test_add_then_cancel(self, admin, make_client_doc):
        client, fake_db, headers = admin
        fake_db.clients.seed(make_client_doc())

        created = client.post(
            f"/api/admin/clients/{CLIENT_ID}/requests",
            json={"name": "Deck Quote", "folder_id": "F2"},
            headers=headers,
        )
        assert created.status_code == 201
        request_id = created.json()["request"]["id"]
        assert fake_db.clients.docs[CLIENT_ID]["signatureRequests"][0]["folderId"] == "F2"

        cancelled = client.delete(f"/api/admin/clients/{CLIENT_ID}/requests/{request_id}", headers=headers)
        assert cancelled.json() == {"cancelled": True, "request_id": request_id}
        assert fake_db.clients.docs[CLIENT_ID]["signatureRequests"] == []

        again = client.delete(f"/api/admin/clients/{CLIENT_ID}/requests/{request_id}", headers=headers)
        assert again.json()["cancelled"] is False

    def test_blank_name_rejected(self, admin, make_client_doc):
        client, fake_db, headers = admin
        fake_db.clients.seed(make_client_doc())
        response = client.post(
            f"/api/admin/clients/{CLIENT_ID}/requests", json={"name": "  "}, headers=headers,
        )
        assert response.status_code == 400
        assert response.json()["error_code"] == "VALIDATION_ERROR"

    def test_legacy_flag_toggle(self, admin, make_client_doc):
        client, fake_db, headers = admin
        fake_db.clients.seed(make_client_doc(quoteFolderId="Q1"))

        response = client.put(
            f"/api/admin/clients/{CLIENT_ID}/signature-needed",
            json={"signature_needed": True},
            headers=headers,
        )
        assert response.status_code == 200
        stored = fake_db.clients.docs[CLIENT_ID]
        assert stored["signatureNeeded"] is True
        assert stored["quoteRequestId"] == response.json()["quote_request_id"]

    def test_reflag_after_legacy_sign_mints_new_request_id(self, admin, make_client_doc, ink_png_data_url):
        client, fake_db, headers = admin
        fake_db.clients.seed(make_client_doc(quoteFolderId="Q1", signature={
            "signer": CLIENT_ID,
            "signedAt": "2023-06-01T10:00:00+00:00",
            "image": ink_png_data_url,
        }))

        response = client.put(
            f"/api/admin/clients/{CLIENT_ID}/signature-needed",
            json={"signature_needed": True},
            headers=headers,
        )

        detail = client.get(f"/api/admin/clients/{CLIENT_ID}", headers=headers).json()["client"]
        history_ids = {s["docId"] for s in detail["signatures"]}
        assert history_ids == {"legacy-quote"}
        assert response.json()["quote_request_id"] not in history_ids


class TestCertificates:

    def test_regenerate_legacy_certificate(self, admin, make_client_doc, ink_png_data_url):
        client, fake_db, headers = admin
        fake_db.clients.seed(make_client_doc(signature={
            "signer": CLIENT_ID,
            "signedAt": "2023-06-01T10:00:00+00:00",
            "image": ink_png_data_url,
        }))

        response = client.get(f"/api/admin/clients/{CLIENT_ID}/signatures/0/certificate", headers=headers)

        assert response.status_code == 200
        assert response.content.startswith(b"%PDF")
        assert 'filename="Certificate_smith_Quote.pdf"' in response.headers["content-disposition"]

    def test_missing_index_is_404(self, admin, make_client_doc):
        client, fake_db, headers = admin
        fake_db.clients.seed(make_client_doc())
        response = client.get(f"/api/admin/clients/{CLIENT_ID}/signatures/0/certificate", headers=headers)
        assert response.status_code == 404
