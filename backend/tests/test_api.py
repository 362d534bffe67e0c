import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from mockprep.api.deps import EngineContext
from mockprep.ledger import BalanceLedger, LocalBalanceStore
from mockprep.main import create_app
from mockprep.session.collaborators import CatalogPurchaseFlow
from mockprep.session.completion_store import LocalCompletionStore
from mockprep.session.errors import GENERIC_RETRY_MESSAGE
from mockprep.session.registry import SessionRegistry


class BrokenDiskBalanceStore(LocalBalanceStore):
    def _write_snapshot(self, snapshot: dict) -> None:
        raise OSError("read-only filesystem")


def _engine(balance_store=None, free_grant: int = 1) -> EngineContext:
    return EngineContext(
        ledger=BalanceLedger(balance_store or LocalBalanceStore(free_grant=free_grant)),
        registry=SessionRegistry(),
        completion_store=LocalCompletionStore(),
        purchase_flow=CatalogPurchaseFlow(),
        duration_seconds=120,
        tick_interval=3600,
        retry_base_sec=0,
        retry_max_sec=0,
    )


def _auth(token: str) -> dict:
    return {"Authorization": f"Bearer {token}"}


def test_healthz_and_auth_required():
    with TestClient(create_app(_engine())) as client:
        assert client.get("/healthz").json()["status"] == "ok"
        assert client.post("/api/interview/start", json={}).status_code == 401
        assert client.get("/api/preps/balance").status_code == 401


def test_full_interview_over_http(dev_jwt_token):
    headers = _auth(dev_jwt_token)
    with TestClient(create_app(_engine(free_grant=1))) as client:
        balance = client.get("/api/preps/balance", headers=headers).json()
        assert balance == {"user_id": "pytest-user", "remaining": 1, "total_purchased": 0}

        started = client.post("/api/interview/start", json={"question_count": 2}, headers=headers)
        assert started.status_code == 200
        view = started.json()
        session_id = view["session_id"]
        assert view["state"] == "active"
        assert view["remaining_balance"] == 0
        assert view["question_total"] == 2
        assert view["remaining_seconds"] == 120

        current = client.get("/api/interview/current", headers=headers).json()
        assert current["session_id"] == session_id

        recording = client.post(f"/api/interview/{session_id}/recording", headers=headers).json()
        assert recording["is_recording"] is True
        token = recording["recording_token"]

        pushed = client.post(
            f"/api/interview/{session_id}/transcript",
            json={"token": token, "text": "I would start with the requirements."},
            headers=headers,
        ).json()
        assert pushed == {"accepted": True, "answer_buffer": "I would start with the requirements."}

        stopped = client.post(f"/api/interview/{session_id}/recording", headers=headers).json()
        assert stopped["is_recording"] is False
        assert stopped["answer_buffer"] == "I would start with the requirements."

        advanced = client.post(f"/api/interview/{session_id}/advance", headers=headers).json()
        assert advanced["question_position"] == 2

        coded = client.post(f"/api/interview/{session_id}/code", json={"code": "return []"}, headers=headers).json()
        assert coded["code_buffer"] == "return []"

        ended = client.post(f"/api/interview/{session_id}/end", headers=headers).json()
        assert ended["state"] == "ended"
        assert ended["legal_actions"] == []

        again = client.post(f"/api/interview/{session_id}/advance", headers=headers)
        assert again.status_code == 409
        assert again.json()["detail"]["message"] == GENERIC_RETRY_MESSAGE

        history = client.get("/api/history/interviews", headers=headers).json()
        assert len(history["items"]) == 1
        item = history["items"][0]
        assert item["session_id"] == session_id
        assert item["status"] == "ended"
        assert [answer["question_index"] for answer in item["answers"]] == [0, 1]
        assert history["summary"]["total_interviews"] == 1
        assert history["summary"]["completed"] == 1


def test_out_of_preps_returns_packages_and_grant_restores(dev_jwt_token):
    headers = _auth(dev_jwt_token)
    with TestClient(create_app(_engine(free_grant=0))) as client:
        blocked = client.post("/api/interview/start", json={}, headers=headers)
        assert blocked.status_code == 402
        detail = blocked.json()["detail"]
        assert detail["needs_purchase"] is True
        assert detail["current_preps"] == 0
        assert [item["package_id"] for item in detail["packages"]] == ["basic", "standard", "premium"]

        granted = client.post("/api/dev/preps/grant", json={"package_id": "basic"}, headers=headers).json()
        assert granted["remaining"] == 5
        assert granted["total_purchased"] == 5

        unknown = client.post("/api/dev/preps/grant", json={"package_id": "gold"}, headers=headers)
        assert unknown.status_code == 400

        started = client.post("/api/interview/start", json={"kind": "technical"}, headers=headers)
        assert started.status_code == 200
        assert started.json()["remaining_balance"] == 4
        assert started.json()["current_question"]["kind"] == "technical"

        duplicate = client.post("/api/interview/start", json={}, headers=headers)
        assert duplicate.status_code == 409

        session_id = started.json()["session_id"]
        left = client.post(f"/api/interview/{session_id}/leave", headers=headers).json()
        assert left["state"] == "ended"

        history = client.get("/api/history/interviews", headers=headers).json()
        assert history["summary"]["abandoned"] == 1


def test_unknown_kind_and_foreign_session(dev_jwt_token, make_dev_token):
    headers = _auth(dev_jwt_token)
    with TestClient(create_app(_engine(free_grant=2))) as client:
        bad = client.post("/api/interview/start", json={"kind": "astrology"}, headers=headers)
        assert bad.status_code == 400

        session_id = client.post("/api/interview/start", json={}, headers=headers).json()["session_id"]

        stranger = _auth(make_dev_token("someone-else"))
        assert client.get(f"/api/interview/{session_id}/state", headers=stranger).status_code == 403
        assert client.get("/api/interview/missing/state", headers=headers).status_code == 404

        client.post(f"/api/interview/{session_id}/end", headers=headers)


def test_storage_failure_maps_to_retryable_error(dev_jwt_token):
    headers = _auth(dev_jwt_token)
    engine = _engine(balance_store=BrokenDiskBalanceStore(free_grant=3))
    with TestClient(create_app(engine)) as client:
        response = client.post("/api/interview/start", json={}, headers=headers)
        assert response.status_code == 503
        assert response.json()["detail"]["retryable"] is True
        assert engine.registry.count_live() == 0


def test_metrics_requires_auth(dev_jwt_token):
    with TestClient(create_app(_engine())) as client:
        assert client.get("/api/system/metrics").status_code == 401
        payload = client.get("/api/system/metrics", headers=_auth(dev_jwt_token)).json()
        assert "sessions_started_total" in payload
        assert payload["session_duration_sec"] > 0


def test_websocket_drives_session(dev_jwt_token):
    headers = _auth(dev_jwt_token)
    with TestClient(create_app(_engine(free_grant=1))) as client:
        session_id = client.post("/api/interview/start", json={}, headers=headers).json()["session_id"]

        with client.websocket_connect(f"/ws/interview/{session_id}?token={dev_jwt_token}") as ws:
            initial = ws.receive_json()
            assert initial["type"] == "session_view"
            assert initial["state"] == "active"

            ws.send_json({"type": "ping"})
            assert ws.receive_json() == {"type": "pong"}

            ws.send_json({"type": "toggle_recording"})
            recording = ws.receive_json()
            assert recording["is_recording"] is True

            ws.send_json({"type": "transcript", "token": recording["recording_token"], "text": "hello"})
            ack = ws.receive_json()
            assert ack == {"type": "transcript_ack", "accepted": True, "answer_buffer": "hello"}

            ws.send_json({"type": "bogus"})
            assert ws.receive_json()["type"] == "error"

            ws.send_json({"type": "end"})
            states = []
            for _ in range(5):
                message = ws.receive_json()
                states.append(message.get("state"))
                if message.get("state") == "ended":
                    break
            assert states[-1] == "ended"


def test_websocket_rejects_missing_token():
    with TestClient(create_app(_engine())) as client:
        with pytest.raises(WebSocketDisconnect):
            with client.websocket_connect("/ws/interview/anything") as ws:
                ws.receive_json()
