from __future__ import annotations

from fastapi.testclient import TestClient

from conftest import T0
from tracking_monitor.api import create_app
from tracking_monitor.models import TrackingRequest


class _StubWatcher:
    def __init__(self, owner: int, token: str):
        self.request = TrackingRequest(owner=owner, token=token, created_at=T0)
        self.owner = owner

    def to_dict(self) -> dict:
        return {**self.request.to_dict(), "state": "polling", "checks": 3}


class _StubSupervisor:
    def __init__(self, watchers: list[_StubWatcher]):
        self._watchers = watchers

    def __len__(self) -> int:
        return len(self._watchers)

    def watchers(self, owner=None) -> list[_StubWatcher]:
        return [w for w in self._watchers if owner is None or w.owner == owner]

    def snapshot(self) -> list[dict]:
        return [w.to_dict() for w in self._watchers]


def _client() -> TestClient:
    sup = _StubSupervisor([_StubWatcher(1, "111"), _StubWatcher(2, "222")])
    return TestClient(create_app(sup))


def test_health() -> None:
    r = _client().get("/health")
    assert r.status_code == 200
    assert r.json() == {"status": "healthy", "service": "tracking-monitor", "watchers": 2}


def test_list_watchers() -> None:
    r = _client().get("/watchers")
    assert r.status_code == 200
    body = r.json()
    assert body["count"] == 2
    assert [w["token"] for w in body["watchers"]] == ["111", "222"]
    assert body["watchers"][0]["created_at"] == "2024-03-01T12:00:00+00:00"


def test_owner_watchers() -> None:
    client = _client()
    r = client.get("/watchers/2")
    assert r.status_code == 200
    assert r.json()["watchers"][0]["token"] == "222"

    assert client.get("/watchers/3").status_code == 404
