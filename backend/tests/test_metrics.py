import pytest
from fastapi.testclient import TestClient

from backend.core.metrics import METRICS, Counter, normalize_path
from backend.main import app

client = TestClient(app)


@pytest.mark.parametrize(
    "path,expected",
    [
        ("/api/admin/subscriptions/sub_Nx81kQ", "/api/admin/subscriptions/:id"),
        ("/api/subscriptions/notifications/42/read", "/api/subscriptions/notifications/:id/read"),
        ("/api/admin/subscriptions/plans/premium", "/api/admin/subscriptions/plans/premium"),
        ("/api/storage/content/0b3f6c2e-1d2a-4c1b-9f39-3f5d7a9e2b11/lock-status", "/api/storage/content/:id/lock-status"),
    ],
)
def test_normalize_path(path, expected):
    assert normalize_path(path) == expected


def test_counter_rejects_decrement():
    counter = Counter("tmp_total")
    with pytest.raises(ValueError):
        counter.inc(amount=-1)


def test_registry_refuses_kind_change():
    with pytest.raises(ValueError):
        METRICS.gauge("http_requests_total")


def test_metrics_endpoint_exports_request_counts():
    client.get("/healthz")
    body = client.get("/metrics").text
    assert "# TYPE http_requests_total counter" in body
    assert 'http_requests_total{method="GET",path="/healthz",status="200"} 1.0' in body


def test_label_values_are_escaped():
    counter = Counter("escape_total", ["reason"])
    counter.inc(labels={"reason": 'say "hi"'})
    assert counter.export()[-1] == 'escape_total{reason="say \\"hi\\""} 1.0'
