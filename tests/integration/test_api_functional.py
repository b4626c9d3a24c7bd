import os
from pathlib import Path

from fastapi.testclient import TestClient

os.environ["SHIELD_CHAT_CORPUS"] = str(
    Path(__file__).resolve().parents[2] / "packs" / "site-pack.json"
)
os.environ.pop("SHIELD_CHAT_REMOTE_URL", None)
os.environ.pop("SHIELD_CHAT_LOCAL_URL", None)


def _client() -> TestClient:
    # Import after environment setup so the sample pack is served.
    from shield_chat.api.main import app

    return TestClient(app)


def _open_session(client: TestClient, language: str = "en") -> tuple[str, dict[str, str]]:
    resp = client.post("/sessions", json={"language": language})
    assert resp.status_code == 200
    payload = resp.json()
    assert payload["headroom"] == 100_000
    return payload["session_id"], {"X-CSRF": payload["csrf_token"]}


def test_api_session_message_trace_metrics() -> None:
    client = _client()

    health = client.get("/health")
    assert health.status_code == 200
    assert health.json()["remote_configured"] is False

    session_id, headers = _open_session(client)
    message_resp = client.post(
        f"/sessions/{session_id}/messages",
        json={"message": "remote service messages", "hp": ""},
        headers=headers,
    )
    assert message_resp.status_code == 200
    payload = message_resp.json()
    assert payload["source"] == "extractive"
    assert payload["citations"][0] == "privacy-1"
    assert "[#privacy-1]" in payload["answer"]
    assert payload["headroom"] < 100_000

    trace_resp = client.get(f"/traces/{payload['trace_id']}")
    assert trace_resp.status_code == 200
    assert trace_resp.json()["groundedness"] >= 0.95

    source_resp = client.post(
        "/sources/search", json={"query": "cookies", "language": "en", "top_k": 2}
    )
    assert source_resp.status_code == 200
    assert source_resp.json()["items"][0]["passage_id"] == "privacy-2"

    metrics_resp = client.get("/metrics")
    assert metrics_resp.status_code == 200
    assert metrics_resp.json()["total_requests"] >= 1
    assert metrics_resp.json()["by_source"]["extractive"] >= 1


def test_api_rejects_missing_or_wrong_csrf() -> None:
    client = _client()
    session_id, _ = _open_session(client)

    missing = client.post(f"/sessions/{session_id}/messages", json={"message": "hello"})
    wrong = client.post(
        f"/sessions/{session_id}/messages",
        json={"message": "hello"},
        headers={"X-CSRF": "not-the-token"},
    )
    unknown = client.post(
        "/sessions/nope/messages", json={"message": "hello"}, headers={"X-CSRF": "x"}
    )

    assert missing.status_code == 403
    assert wrong.status_code == 403
    assert unknown.status_code == 404


def test_api_blocks_hostile_input() -> None:
    client = _client()
    session_id, headers = _open_session(client, "es")

    scan_resp = client.post("/scan", json={"text": "<script>alert(1)</script>"})
    message_resp = client.post(
        f"/sessions/{session_id}/messages",
        json={"message": "<script>alert(1)</script>"},
        headers=headers,
    )

    assert scan_resp.status_code == 200
    assert scan_resp.json()["accepted"] is False
    payload = message_resp.json()
    assert payload["status"] == "input_rejected"
    assert payload["guardrails"][0]["code"] == "input_blocked"
    assert payload["guardrails"][0]["level"] == "error"


def test_api_streams_text_events() -> None:
    client = _client()
    session_id, headers = _open_session(client)

    resp = client.post(
        f"/sessions/{session_id}/messages/stream",
        json={"message": "remote service messages"},
        headers=headers,
    )

    assert resp.status_code == 200
    assert resp.headers["content-type"].startswith("text/event-stream")
    body = resp.text
    assert "data: Based on retrieved content:" in body
    assert "event: meta" in body
    assert '"source": "extractive"' in body
    assert body.endswith("data: [END]\n\n")


class _ClosingRemote:
    def __init__(self) -> None:
        self.closed = False

    async def aclose(self) -> None:
        self.closed = True


def test_api_shutdown_closes_remote_client(monkeypatch) -> None:
    from shield_chat.api import main

    remote = _ClosingRemote()
    monkeypatch.setattr(main, "_remote", remote)

    with TestClient(main.app) as client:
        assert client.get("/health").status_code == 200
        assert remote.closed is False

    assert remote.closed is True
