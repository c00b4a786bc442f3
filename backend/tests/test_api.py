"""
Tests for the HTTP endpoints
"""
import pytest
from conftest import OWNER, FakeInference, FakePayments, make_png
from fastapi.testclient import TestClient

from cropadvisor.agents.analysis_agent import AnalysisAgent
from cropadvisor.config import settings
from cropadvisor.main import app
from cropadvisor.services.fingerprint import fingerprint_image
from cropadvisor.services.payment import GaslessPaymentCoordinator


@pytest.fixture
def upload_dir(tmp_path, monkeypatch):
    path = tmp_path / "uploads"
    monkeypatch.setattr(settings, "UPLOAD_DIR", str(path))
    return path


@pytest.fixture
def agent(store, upload_dir):
    agent = AnalysisAgent(store=store, payments=FakePayments("42"), inference=FakeInference())
    app.state.agent = agent
    yield agent
    app.state.agent = None


@pytest.fixture
def client():
    return TestClient(app)


def _staged_files(upload_dir):
    pending = upload_dir / "pending"
    return list(pending.iterdir()) if pending.exists() else []


def test_health(client):
    response = client.get("/api/health")

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "ok"
    assert "timestamp" in body


def test_analyze_pending_record(client, agent, store, upload_dir):
    image = make_png()
    store.create_pending("42", OWNER, fingerprint_image(image))

    response = client.post(
        "/api/analyze",
        data={"analysisId": "42"},
        files={"image": ("leaf.png", image, "image/png")},
    )

    assert response.status_code == 200
    assert response.json() == {
        "diagnosis": "leaf rust",
        "advice": "apply fungicide",
        "severity": "high",
        "confidence": 0.9,
    }
    assert _staged_files(upload_dir) == []


def test_analyze_requires_image(client, agent):
    response = client.post("/api/analyze", data={"analysisId": "42"})

    assert response.status_code == 400
    assert "image" in response.json()["error"]


def test_analyze_requires_analysis_id(client, agent):
    response = client.post("/api/analyze", files={"image": ("leaf.png", make_png(), "image/png")})

    assert response.status_code == 400
    assert "error" in response.json()


def test_analyze_rejects_non_image_mime(client, agent, upload_dir):
    response = client.post(
        "/api/analyze",
        data={"analysisId": "42"},
        files={"image": ("notes.txt", b"hello", "text/plain")},
    )

    assert response.status_code == 415
    assert response.json() == {"error": "Only image files are allowed."}
    assert _staged_files(upload_dir) == []


def test_analyze_rejects_oversized_upload(client, agent, upload_dir, monkeypatch):
    monkeypatch.setattr(settings, "MAX_UPLOAD_BYTES", 64)
    response = client.post(
        "/api/analyze",
        data={"analysisId": "42"},
        files={"image": ("big.png", b"\x89PNG" + b"0" * 200, "image/png")},
    )

    assert response.status_code == 413
    assert "error" in response.json()
    assert _staged_files(upload_dir) == []


def test_analyze_unknown_id(client, agent, upload_dir):
    response = client.post(
        "/api/analyze",
        data={"analysisId": "404"},
        files={"image": ("leaf.png", make_png(), "image/png")},
    )

    assert response.status_code == 404
    assert "404" in response.json()["error"]
    assert _staged_files(upload_dir) == []


def test_analyze_inference_unavailable(client, agent, store, upload_dir):
    image = make_png()
    store.create_pending("42", OWNER, fingerprint_image(image))
    agent.inference = FakeInference(fail=True)

    response = client.post(
        "/api/analyze",
        data={"analysisId": "42"},
        files={"image": ("leaf.png", image, "image/png")},
    )

    assert response.status_code == 503
    assert "error" in response.json()
    assert store.get("42").status == "pending"
    assert _staged_files(upload_dir) == []


def test_pay_and_analyze_then_history(client, agent):
    image = make_png((200, 180, 20))

    response = client.post(
        "/api/analyses",
        data={"owner": OWNER},
        files={"image": ("leaf.png", image, "image/png")},
    )

    assert response.status_code == 201
    assert response.json()["correlation_id"] == "42"

    history = client.get(f"/api/analyses/{OWNER}")
    assert history.status_code == 200
    records = history.json()
    assert len(records) == 1
    assert records[0]["status"] == "completed"
    assert records[0]["image_fingerprint"] == fingerprint_image(image)
    assert records[0]["completed_at"] is not None


def test_history_includes_pending_with_null_results(client, agent, store):
    store.create_pending("1", OWNER, "a" * 64)

    records = client.get(f"/api/analyses/{OWNER}").json()

    assert records[0]["status"] == "pending"
    assert records[0]["diagnosis"] is None
    assert records[0]["confidence"] is None


def test_price(client, agent):
    response = client.get("/api/price")
    assert response.json() == {"price_wei": 10**15}


def test_gasless_payment_mode_returns_not_implemented(client, agent):
    agent.payments = GaslessPaymentCoordinator()

    response = client.post(
        "/api/analyses",
        data={"owner": OWNER},
        files={"image": ("leaf.png", make_png(), "image/png")},
    )

    assert response.status_code == 501
    assert "not implemented" in response.json()["error"]


def test_services_not_ready(client):
    app.state.agent = None
    response = client.get(f"/api/analyses/{OWNER}")

    assert response.status_code == 503
    assert "error" in response.json()


def test_history_lookup_ignores_address_case(client, agent, store):
    from web3 import Web3

    store.create_pending("1", OWNER, "a" * 64)

    records = client.get(f"/api/analyses/{Web3.to_checksum_address(OWNER)}").json()

    assert [record["correlation_id"] for record in records] == ["1"]


def test_history_rejects_invalid_address(client, agent):
    response = client.get("/api/analyses/not-a-wallet")

    assert response.status_code == 400
    assert "error" in response.json()


def test_lifespan_closes_every_handle(store, upload_dir, monkeypatch):
    import cropadvisor.main as main_module

    payments = FakePayments()
    inference = FakeInference()
    monkeypatch.setattr(
        main_module,
        "build_agent",
        lambda config: AnalysisAgent(store=store, payments=payments, inference=inference),
    )

    with TestClient(app) as lifespan_client:
        assert lifespan_client.get("/api/price").status_code == 200

    assert payments.closed is True
    assert inference.closed is True
    assert app.state.agent is None
