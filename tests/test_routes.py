from datetime import datetime, timezone

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from conftest import FakeSender
from ledger.api.routes import router
from ledger.config import get_settings
from ledger.deps import get_repo, get_sender
from ledger.models.schemas import ExpenseRecord

AUTH = {"Authorization": "Bearer s3cret"}


@pytest.fixture
def sender():
    return FakeSender()


@pytest.fixture
def app(repo, settings, sender):
    app = FastAPI()
    app.include_router(router)
    app.dependency_overrides[get_repo] = lambda: repo
    app.dependency_overrides[get_settings] = lambda: settings
    app.dependency_overrides[get_sender] = lambda: sender
    return app


@pytest.fixture
def client(app):
    return TestClient(app)


def log(repo, expense_id, user, amount, discarded=False):
    repo.run(
        lambda ledger: ledger.add_expenses(
            [
                ExpenseRecord(
                    id=expense_id,
                    user=user,
                    amount=amount,
                    category="food",
                    timestamp=datetime(2024, 3, 15, tzinfo=timezone.utc),
                    discarded=discarded,
                )
            ]
        )
    )


def test_health(client):
    assert client.get("/health").json() == {"status": "ok"}


def test_parse(client):
    response = client.post("/parse", json={"message": "50+30-food"})
    assert response.json() == {"parsed": {"amount": 80.0, "category": "food"}}

    assert client.post("/parse", json={"message": "no numbers"}).json() == {"parsed": None}


def test_expense_lookup_includes_discarded(client, repo):
    assert client.get("/expenses/5").status_code == 404

    log(repo, 5, "alice", 120, discarded=True)
    [record] = client.get("/expenses/5").json()
    assert record["amount"] == 120
    assert record["discarded"] is True


def test_settlement(client, repo):
    log(repo, 1, "alice", 300)
    log(repo, 2, "bob", 100)
    report = client.get("/settlement").json()
    assert report["total"] == 400
    assert report["transfers"] == [{"debtor": "bob", "creditor": "alice", "amount": 100.0}]
    assert report["all_clear"] is False


class TestDailySummary:
    @pytest.mark.parametrize("headers", [{}, {"Authorization": "Bearer nope"}, {"Authorization": "s3cret"}])
    def test_rejects_bad_secret(self, client, sender, headers):
        assert client.get("/cron/daily-summary", headers=headers).status_code == 401
        assert sender.sent == []

    def test_rejects_everything_without_a_configured_secret(self, client, settings):
        settings.cron_secret = ""
        assert client.get("/cron/daily-summary").status_code == 401

    def test_missing_chat_id(self, client, settings):
        settings.telegram_chat_id = ""
        assert client.post("/cron/daily-summary", headers=AUTH).status_code == 500

    def test_bot_not_running(self, app, client):
        app.dependency_overrides[get_sender] = lambda: None
        assert client.get("/cron/daily-summary", headers=AUTH).status_code == 503

    @pytest.mark.parametrize("method", ["GET", "POST"])
    def test_sends_digest(self, client, sender, repo, method):
        repo.run(lambda ledger: ledger.set_budget("food", 3000))
        response = client.request(method, "/cron/daily-summary", headers=AUTH)

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["message"] == "Daily summary sent"

        [(chat_id, text, reply_to)] = sender.sent
        assert chat_id == "-100123"
        assert "Daily Summary" in text
        assert reply_to is None


class TestWebhook:
    def test_bot_not_running(self, client):
        assert client.post("/webhook", json={"update_id": 1}).status_code == 503

    def test_wrong_secret(self, client, settings):
        settings.webhook_secret = "hook"
        response = client.post(
            "/webhook",
            json={"update_id": 1},
            headers={"X-Telegram-Bot-Api-Secret-Token": "wrong"},
        )
        assert response.status_code == 401
