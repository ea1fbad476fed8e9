import asyncio

import pytest
from fastapi.testclient import TestClient

import main
import qr
from database import db


def test_root(client):
    assert client.get("/").json() == {"message": "eTuckshop API running"}


def test_database_diagnostics(client):
    data = client.get("/test").json()
    assert data["backend"] == "✅ Running"
    assert data["database_name"] == "etuckshop_test"
    assert data["connection_status"] == "Connected"


def test_unknown_route_uses_error_envelope(client):
    res = client.get("/api/nowhere")
    assert res.status_code == 404
    assert res.json() == {"success": False, "message": "Not Found"}


def test_startup_seeds_catalog_and_admin(monkeypatch):
    monkeypatch.setenv("ADMIN_EMAIL", "owner@example.com")
    monkeypatch.setenv("ADMIN_PASSWORD", "ownerpass")
    with TestClient(main.app) as client:
        assert db["category"].count_documents({}) == len(main.DEMO_CATALOG)
        assert db["product"].count_documents({}) == sum(len(c["products"]) for c in main.DEMO_CATALOG)
        assert db["user"].find_one({"email": "owner@example.com"})["role"] == "ADMIN"
        assert main.app.state.qr_sweeper is not None

        res = client.post("/api/auth/login", json={"email": "owner@example.com", "password": "ownerpass"})
        assert res.json()["data"]["user"]["role"] == "ADMIN"


def test_seed_catalog_runs_once():
    main.seed_catalog()
    count = db["product"].count_documents({})
    main.seed_catalog()
    assert db["product"].count_documents({}) == count


def test_qr_sweeper_runs_until_cancelled(monkeypatch):
    calls = []

    def sweep():
        calls.append(1)
        if len(calls) == 1:
            raise RuntimeError("database unavailable")
        return 0

    monkeypatch.setattr(qr, "sweep_expired_qr_codes", sweep)

    async def run():
        task = asyncio.create_task(qr.run_qr_sweeper(interval=0))
        while len(calls) < 3:
            await asyncio.sleep(0.01)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

    asyncio.run(asyncio.wait_for(run(), timeout=5))
    assert len(calls) >= 3


def test_qr_sweeper_stops_on_shutdown():
    with TestClient(main.app):
        task = main.app.state.qr_sweeper
        assert not task.done()
    assert task.done()
