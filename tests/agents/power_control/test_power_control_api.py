import pytest
from conftest import API_KEY
from fastapi.testclient import TestClient

from agents.power_control.main import create_app

PROTECTED_ROUTES = [
    ("get", "/api/gpus", None),
    ("get", "/api/gpus/0", None),
    ("get", "/api/gpus/abc", None),
    ("post", "/api/power", b'{"mode": "all", "powerLimitWatts": 200}'),
    ("post", "/api/power", b"not json"),
]


@pytest.mark.parametrize("headers", [{}, {"X-API-Key": "wrong"}, {"X-API-Key": ""}])
@pytest.mark.parametrize("method,path,body", PROTECTED_ROUTES)
def test_rejects_bad_api_key_before_touching_gpus(client, fake_gateway, headers, method, path, body):
    fake_gateway.calls.clear()

    r = client.request(method.upper(), path, headers=headers, content=body)

    assert r.status_code == 401
    assert r.json() == {"error": "Invalid API key"}
    assert fake_gateway.calls == []


def test_list_gpus(client, auth_headers):
    r = client.get("/api/gpus", headers=auth_headers)
    assert r.status_code == 200
    body = r.json()
    assert [gpu["index"] for gpu in body] == [0, 1]
    assert body[0] == {
        "index": 0,
        "name": "NVIDIA Test GPU 0",
        "powerLimit": 250,
        "minLimit": 100,
        "maxLimit": 300,
        "powerUsage": 75,
        "powerManagement": True,
    }


def test_list_gpus_refreshes_on_every_request(client, auth_headers, fake_gateway):
    client.get("/api/gpus", headers=auth_headers)
    fake_gateway.devices[0].limit_mw = 180_000
    r = client.get("/api/gpus", headers=auth_headers)
    assert r.json()[0]["powerLimit"] == 180


def test_get_gpu(client, auth_headers):
    r = client.get("/api/gpus/1", headers=auth_headers)
    assert r.status_code == 200
    assert r.json()["name"] == "NVIDIA Test GPU 1"


@pytest.mark.parametrize("index", ["2", "99", "-1"])
def test_get_gpu_out_of_range(client, auth_headers, index):
    r = client.get(f"/api/gpus/{index}", headers=auth_headers)
    assert r.status_code == 404
    assert r.json() == {"error": "GPU index out of range"}


@pytest.mark.parametrize("index", ["abc", "1.5", "0x1"])
def test_get_gpu_invalid_index(client, auth_headers, fake_gateway, index):
    fake_gateway.calls.clear()
    r = client.get(f"/api/gpus/{index}", headers=auth_headers)
    assert r.status_code == 400
    assert r.json() == {"error": "Invalid GPU index"}
    assert fake_gateway.calls == []


def test_count_failure_returns_500(client, auth_headers, fake_gateway):
    fake_gateway.fail("device_count")

    r = client.get("/api/gpus", headers=auth_headers)
    assert r.status_code == 500
    assert "error" in r.json()

    r = client.get("/api/gpus/0", headers=auth_headers)
    assert r.status_code == 500


class TestSetPower:
    """POST /api/power"""

    def test_all_mode(self, client, auth_headers, fake_gateway):
        r = client.post("/api/power", headers=auth_headers, json={"mode": "all", "powerLimitWatts": 200})

        assert r.status_code == 200
        assert [gpu["powerLimit"] for gpu in r.json()] == [200, 200]
        assert fake_gateway.write_calls == [(0, 200_000), (1, 200_000)]

    def test_power_limit_alias(self, client, auth_headers, fake_gateway):
        r = client.post("/api/power", headers=auth_headers, json={"mode": "all", "powerLimit": 150})
        assert r.status_code == 200
        assert fake_gateway.write_calls == [(0, 150_000), (1, 150_000)]

    def test_clamped_values_are_reported(self, client, auth_headers):
        r = client.post("/api/power", headers=auth_headers, json={"mode": "all", "powerLimitWatts": 10})
        assert [gpu["powerLimit"] for gpu in r.json()] == [100, 100]

    def test_manual_mode_returns_only_updated_gpus(self, client, auth_headers, fake_gateway):
        r = client.post(
            "/api/power",
            headers=auth_headers,
            json={"mode": "manual", "manualLimits": {"1": 180, "7": 200}},
        )

        assert r.status_code == 200
        body = r.json()
        assert len(body) == 1
        assert body[0]["index"] == 1
        assert body[0]["powerLimit"] == 180
        assert fake_gateway.write_calls == [(1, 180_000)]

    def test_all_failures_return_empty_list(self, client, auth_headers, fake_gateway):
        fake_gateway.fail("set_power_limit_mw")
        r = client.post("/api/power", headers=auth_headers, json={"mode": "all", "powerLimitWatts": 200})
        assert r.status_code == 200
        assert r.json() == []

    def test_cache_reflects_applied_limits(self, client, auth_headers, engine):
        client.post("/api/power", headers=auth_headers, json={"mode": "manual", "manualLimits": {"0": 120}})
        assert engine.cache.get(0).power_limit_watts == 120
        assert engine.cache.get(1).power_limit_watts == 250

    def test_invalid_mode(self, client, auth_headers, fake_gateway):
        r = client.post("/api/power", headers=auth_headers, json={"mode": "turbo", "powerLimitWatts": 200})
        assert r.status_code == 400
        assert r.json() == {"error": "Invalid mode (must be 'all' or 'manual')"}
        assert fake_gateway.write_calls == []

    @pytest.mark.parametrize(
        "body",
        [
            b"not json",
            b"",
            b"[1, 2]",
            b'{"mode": "all", "powerLimitWatts": -5}',
            b'{"mode": "all", "powerLimitWatts": "lots"}',
            b'{"mode": "manual", "manualLimits": {"zero": 100}}',
        ],
    )
    def test_malformed_body(self, client, auth_headers, fake_gateway, body):
        r = client.post("/api/power", headers=auth_headers, content=body)
        assert r.status_code == 400
        assert r.json() == {"error": "Invalid request format"}
        assert fake_gateway.write_calls == []

    def test_count_failure(self, client, auth_headers, fake_gateway):
        fake_gateway.fail("device_count")
        r = client.post("/api/power", headers=auth_headers, json={"mode": "all", "powerLimitWatts": 200})
        assert r.status_code == 500


class TestOperationalRoutes:
    """Routes that do not require an API key"""

    def test_health(self, client):
        r = client.get("/health")
        assert r.status_code == 200
        assert r.json() == {"status": "ok"}

    def test_ready(self, client):
        r = client.get("/ready")
        assert r.json() == {"ready": True}

    def test_metrics(self, client, auth_headers):
        client.get("/api/gpus", headers=auth_headers)
        client.get("/api/gpus/9", headers=auth_headers)

        r = client.get("/metrics")
        assert r.status_code == 200
        text = r.text
        assert "power_control_inventory_refresh_total" in text
        assert 'power_control_http_requests_total{method="GET",path="/api/gpus/{index}",status="404"} 1.0' in text
        assert 'power_control_gpu_power_limit_watts{index="0"} 250.0' in text

    def test_unknown_route_uses_error_body(self, client):
        r = client.get("/nope")
        assert r.status_code == 404
        assert r.json() == {"error": "Not Found"}


def test_create_app_requires_api_key(engine):
    with pytest.raises(ValueError):
        create_app(engine, "")


def test_lifespan_initializes_and_shuts_down(fake_gateway):
    from agents.power_control.power_control_engine import PowerControlEngine

    engine = PowerControlEngine(fake_gateway, timeout_s=None)
    app = create_app(engine, API_KEY)

    with TestClient(app) as test_client:
        assert engine.initialized
        assert test_client.get("/ready").json() == {"ready": True}

    assert not engine.initialized
    assert fake_gateway.call_names().count("shutdown") == 1
