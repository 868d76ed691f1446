"""
RExeli Backend — API Route Tests
==================================

What:  HTTP-level tests through the full middleware and exception handler stack.
How:   httpx AsyncClient over ASGITransport; service getters point at the
       per-test database and fakes (see conftest.test_client).

What we test:
    ✅ Health check reports Gemini status without touching the network
    ✅ Ledger errors map to 400 / 402 / 403 / 404 / 409 with the error envelope
    ✅ Cron endpoints require the shared secret
    ✅ Training and fine-tuning endpoints are admin-only; export returns JSONL rows
    ✅ POST /api/extract charges the caller's own account
"""

from unittest.mock import AsyncMock, patch

import pytest

from rexeli.services.gemini_service import gemini_service

from conftest import ADMIN, USER, actor_headers

CRON_HEADERS = {"X-Cron-Secret": "test-cron-secret"}


async def open_funded_account(client, credits: int = 10) -> None:
    response = await client.post(
        "/api/accounts", json={"account_id": USER.actor_id}, headers=actor_headers(USER)
    )
    assert response.status_code == 201
    response = await client.post(
        f"/api/accounts/{USER.actor_id}/credit",
        json={"amount": credits},
        headers=actor_headers(ADMIN),
    )
    assert response.status_code == 200


@pytest.mark.asyncio
class TestHealth:
    async def test_health_reports_gemini_available(self, test_client):
        with patch.object(gemini_service, "health_check", AsyncMock(return_value=True)):
            response = await test_client.get("/health")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["database"] == "connected"
        assert body["gemini"] == "available"
        assert "X-Request-ID" in response.headers

    async def test_health_degraded_when_gemini_down(self, test_client):
        with patch.object(gemini_service, "health_check", AsyncMock(return_value=False)):
            response = await test_client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "degraded"


@pytest.mark.asyncio
class TestLedgerRoutes:
    async def test_open_and_read_balance(self, test_client):
        await open_funded_account(test_client, 10)

        response = await test_client.get(
            f"/api/accounts/{USER.actor_id}/balance", headers=actor_headers(USER)
        )

        assert response.status_code == 200
        assert response.json()["credits"] == 10

    async def test_debit_shortfall_is_402_with_details(self, test_client):
        await open_funded_account(test_client, 5)

        response = await test_client.post(
            f"/api/accounts/{USER.actor_id}/debit",
            json={"amount": 7, "idempotency_key": "req-1"},
            headers=actor_headers(USER),
        )

        assert response.status_code == 402
        body = response.json()
        assert body["error"] == "insufficient_credits"
        assert body["details"]["shortfall"] == 2

    async def test_duplicate_debit_is_409(self, test_client):
        await open_funded_account(test_client, 10)
        debit = {"amount": 2, "idempotency_key": "req-1"}
        url = f"/api/accounts/{USER.actor_id}/debit"

        first = await test_client.post(url, json=debit, headers=actor_headers(USER))
        second = await test_client.post(url, json=debit, headers=actor_headers(USER))

        assert first.status_code == 200
        assert first.json()["new_balance"] == 8
        assert second.status_code == 409
        assert second.json()["error"] == "duplicate_operation"

    async def test_invalid_amount_is_400(self, test_client):
        await open_funded_account(test_client, 10)

        response = await test_client.post(
            f"/api/accounts/{USER.actor_id}/debit",
            json={"amount": 0, "idempotency_key": "req-1"},
            headers=actor_headers(USER),
        )

        assert response.status_code == 400
        assert response.json()["error"] == "validation_error"

    async def test_other_users_account_is_403(self, test_client):
        await open_funded_account(test_client)

        response = await test_client.get(
            f"/api/accounts/{USER.actor_id}/balance",
            headers={"X-Actor-Id": "someone-else", "X-Actor-Role": "user"},
        )

        assert response.status_code == 403

    async def test_unknown_account_is_404(self, test_client):
        response = await test_client.get(
            "/api/accounts/nobody/balance", headers=actor_headers(ADMIN)
        )

        assert response.status_code == 404
        assert response.json()["error"] == "not_found"

    async def test_missing_actor_is_403(self, test_client):
        response = await test_client.get(f"/api/accounts/{USER.actor_id}/balance")

        assert response.status_code == 403

    async def test_unknown_role_is_400(self, test_client):
        response = await test_client.get(
            f"/api/accounts/{USER.actor_id}/balance",
            headers={"X-Actor-Id": USER.actor_id, "X-Actor-Role": "superuser"},
        )

        assert response.status_code == 400

    async def test_user_cannot_grant_credits(self, test_client):
        await open_funded_account(test_client)

        response = await test_client.post(
            f"/api/accounts/{USER.actor_id}/credit",
            json={"amount": 1000},
            headers=actor_headers(USER),
        )

        assert response.status_code == 403


@pytest.mark.asyncio
class TestCronRoutes:
    async def test_missing_secret_is_403(self, test_client):
        response = await test_client.post("/api/cron/reset-monthly-credits")
        assert response.status_code == 403

    async def test_wrong_secret_is_403(self, test_client):
        response = await test_client.post(
            "/api/cron/monitor-fine-tuning", headers={"X-Cron-Secret": "guess"}
        )
        assert response.status_code == 403

    async def test_sweeps_run_with_secret(self, test_client):
        reset = await test_client.post("/api/cron/reset-monthly-credits", headers=CRON_HEADERS)
        expiry = await test_client.post(
            "/api/cron/check-subscription-expiry", headers=CRON_HEADERS
        )
        monitor = await test_client.post("/api/cron/monitor-fine-tuning", headers=CRON_HEADERS)
        auto = await test_client.post("/api/cron/auto-train", headers=CRON_HEADERS)

        assert reset.status_code == 200
        assert reset.json()["accounts_reset"] == 0
        assert expiry.status_code == 200
        assert monitor.status_code == 200
        assert monitor.json()["checked"] == 0
        assert auto.json() == []


@pytest.mark.asyncio
class TestTrainingRoutes:
    async def test_upload_requires_admin(self, test_client):
        response = await test_client.post(
            "/api/training/documents/upload",
            files={"file": ("rent-roll.pdf", b"%PDF-1.7", "application/pdf")},
            headers=actor_headers(USER),
        )
        assert response.status_code == 403

    async def test_upload_registers_pending_document(self, test_client, storage):
        response = await test_client.post(
            "/api/training/documents/upload",
            files={"file": ("rent-roll.pdf", b"%PDF-1.7", "application/pdf")},
            data={"document_type": "rent_roll"},
            headers=actor_headers(ADMIN),
        )

        assert response.status_code == 201
        body = response.json()
        assert body["document_type"] == "rent_roll"
        assert body["processing_status"] == "pending"
        assert body["verification_status"] == "unverified"
        assert storage.blobs[body["file_ref"]] == b"%PDF-1.7"

    async def test_start_job_without_data_is_422(self, test_client):
        response = await test_client.post(
            "/api/fine-tuning/jobs",
            json={"document_type": "rent_roll"},
            headers=actor_headers(ADMIN),
        )

        assert response.status_code == 422
        assert response.json()["error"] == "insufficient_training_data"

    async def test_start_job_requires_admin(self, test_client, ready_dataset):
        response = await test_client.post(
            "/api/fine-tuning/jobs",
            json={"document_type": ready_dataset.value},
            headers=actor_headers(USER),
        )
        assert response.status_code == 403

    async def test_start_job(self, test_client, provider, ready_dataset):
        response = await test_client.post(
            "/api/fine-tuning/jobs",
            json={"document_type": ready_dataset.value, "hyperparameters": {"epoch_count": 5}},
            headers=actor_headers(ADMIN),
        )

        assert response.status_code == 201
        body = response.json()
        assert body["status"] == "uploading"
        assert body["external_job_id"] == provider.submitted[0]["external_id"]
        assert provider.submitted[0]["hyperparameters"]["epoch_count"] == 5

    async def test_export_requires_admin(self, test_client, ready_dataset):
        response = await test_client.get(
            "/api/training/export",
            params={"document_type": ready_dataset.value},
            headers=actor_headers(USER),
        )
        assert response.status_code == 403

    async def test_export_validation_split(self, test_client, ready_dataset):
        response = await test_client.get(
            "/api/training/export",
            params={"document_type": ready_dataset.value, "split": "validation"},
            headers=actor_headers(ADMIN),
        )

        assert response.status_code == 200
        body = response.json()
        assert body["split"] == "validation"
        assert body["example_count"] == 3
        assert body["valid"] is True
        assert len(body["jsonl"].splitlines()) == 3


@pytest.mark.asyncio
class TestExtractRoute:
    async def test_extract_charges_caller(self, test_client, storage, extractor):
        storage.blobs["2024/09/01/rent-roll.pdf"] = b"%PDF-1.7 rent roll"
        await open_funded_account(test_client, 10)

        response = await test_client.post(
            "/api/extract",
            json={
                "file_ref": "2024/09/01/rent-roll.pdf",
                "document_type": "rent_roll",
                "page_count": 3,
                "idempotency_key": "req-1",
            },
            headers=actor_headers(USER),
        )

        assert response.status_code == 200
        body = response.json()
        assert body["credits_charged"] == 3
        assert body["balance_after"] == 7
        assert body["model_id"] is None

    async def test_extract_without_credits_is_402(self, test_client, storage, extractor):
        storage.blobs["2024/09/01/rent-roll.pdf"] = b"%PDF"
        await open_funded_account(test_client, 1)

        response = await test_client.post(
            "/api/extract",
            json={
                "file_ref": "2024/09/01/rent-roll.pdf",
                "document_type": "rent_roll",
                "page_count": 2,
                "idempotency_key": "req-1",
            },
            headers=actor_headers(USER),
        )

        assert response.status_code == 402
        extractor.extract.assert_not_awaited()
