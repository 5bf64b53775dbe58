"""HTTP surface tests using FastAPI's TestClient."""

import logging

import pytest
from fastapi.testclient import TestClient

from config import AppConfig
from main import configure_file_logging, create_app
from ratelimit import RateLimiter
from registry import ServerRegistry

USER_AGENT = "LU-Server/0.1"
CLIENT_IP = "203.0.113.7"
BLACKLISTED_IP = "203.0.113.66"


@pytest.fixture
def app_config():
    return AppConfig(
        allowed_user_agent=USER_AGENT,
        stale_timeout=60,
        blacklist=frozenset({BLACKLISTED_IP}),
        official_servers=("10.0.0.1:9000",),
        log_enabled=False,
    )


@pytest.fixture
def registry(app_config, clock):
    return ServerRegistry(app_config.registry_config(), clock=clock)


@pytest.fixture
def app(app_config, registry):
    return create_app(app_config, registry)


@pytest.fixture
def client(app):
    return TestClient(app, client=(CLIENT_IP, 40000))


def post_report(client, port="2301", user_agent=USER_AGENT, **extra):
    return client.post(
        "/report.php",
        data={"port": port, **extra},
        headers={"User-Agent": user_agent},
    )


def test_report_is_listed(client, registry):
    response = post_report(client)

    assert response.status_code == 200
    assert response.text == ""
    assert registry.last_seen(f"{CLIENT_IP}:2301") is not None

    listing = client.get("/servers.txt")
    assert listing.status_code == 200
    assert listing.text == "10.0.0.1:9000\n203.0.113.7:2301"
    assert listing.headers["content-type"] == "text/plain; charset=utf-8"
    assert listing.headers["cache-control"] == "no-cache, no-store, must-revalidate"


def test_stale_report_drops_from_listing(client, clock):
    post_report(client)
    clock.advance(61)

    assert client.get("/servers.txt").text == "10.0.0.1:9000"


def test_security_headers(client):
    response = client.get("/servers.txt")

    assert response.headers["x-content-type-options"] == "nosniff"
    assert response.headers["x-frame-options"] == "DENY"
    assert response.headers["x-xss-protection"] == "1; mode=block"


def test_report_requires_post(client):
    assert client.get("/report.php").status_code == 405


def test_report_requires_user_agent(client, registry):
    response = post_report(client, user_agent="curl/8.0")

    assert response.status_code == 403
    assert len(registry) == 0


def test_report_missing_port(client):
    response = client.post("/report.php", data={}, headers={"User-Agent": USER_AGENT})

    assert response.status_code == 400
    assert response.json()["detail"] == "Missing port parameter"


@pytest.mark.parametrize("port", ["abc", "80", "1023", "65536", "-2301", "+2301", "2_301", " 2301 ", "２３０１"])
def test_report_invalid_port(client, registry, port):
    response = post_report(client, port=port)

    assert response.status_code == 400
    assert response.json()["detail"] == "Invalid port"
    assert len(registry) == 0


@pytest.mark.parametrize("port", ["1024", "65535"])
def test_report_port_range_edges(client, registry, port):
    assert post_report(client, port=port).status_code == 200
    assert registry.last_seen(f"{CLIENT_IP}:{port}") is not None


def test_report_body_too_large(client, registry):
    response = post_report(client, padding="x" * 2048)

    assert response.status_code == 400
    assert len(registry) == 0


def test_streamed_body_too_large_without_length(client, registry):
    def chunks():
        yield b"port=2301&padding="
        for _ in range(64):
            yield b"x" * 1024

    response = client.post(
        "/report.php",
        content=chunks(),
        headers={"User-Agent": USER_AGENT, "Content-Type": "application/x-www-form-urlencoded"},
    )

    assert response.status_code == 400
    assert len(registry) == 0


def test_streamed_body_within_limit(client, registry):
    response = client.post(
        "/report.php",
        content=iter([b"port=", b"2301"]),
        headers={"User-Agent": USER_AGENT, "Content-Type": "application/x-www-form-urlencoded"},
    )

    assert response.status_code == 200
    assert registry.last_seen(f"{CLIENT_IP}:2301") is not None


def test_app_keeps_given_empty_registry(app_config, registry):
    assert len(registry) == 0
    app = create_app(app_config, registry)
    client = TestClient(app, client=(CLIENT_IP, 40000))

    assert app.state.registry is registry
    assert post_report(client).status_code == 200
    assert registry.snapshot() == ["10.0.0.1:9000", "203.0.113.7:2301"]


def test_blacklisted_source_silently_dropped(app, registry):
    client = TestClient(app, client=(BLACKLISTED_IP, 40000))

    response = post_report(client)

    assert response.status_code == 200
    assert len(registry) == 0
    assert BLACKLISTED_IP not in client.get("/servers.txt").text


def test_non_ip_source_rejected(app, registry):
    client = TestClient(app, client=("not-an-ip", 40000))

    response = post_report(client)

    assert response.status_code == 400
    assert response.json()["detail"] == "Invalid IP address"
    assert len(registry) == 0


def test_ipv6_source_is_bracketed(app, registry):
    client = TestClient(app, client=("2001:db8::5", 40000))

    assert post_report(client).status_code == 200
    assert "[2001:db8::5]:2301" in registry.snapshot()


def test_official_list(client):
    post_report(client)

    response = client.get("/official.txt")

    assert response.status_code == 200
    assert response.text == "10.0.0.1:9000"


def test_listing_requires_get(client):
    assert client.post("/servers.txt").status_code == 405
    assert client.post("/official.txt").status_code == 405


def test_health_counts_active_servers(client):
    post_report(client)

    response = client.get("/health")

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "ok"
    assert body["activeServers"] == 2
    assert body["version"] == "1.0.0"
    assert body["uptime"] >= 0
    assert isinstance(body["timestamp"], int)


def test_version(client):
    response = client.get("/version")

    assert response.status_code == 200
    assert response.json() == {"version": "1.0.0"}


def test_rate_limit(app_config, registry):
    app = create_app(app_config, registry, rate_limiter=RateLimiter(max_requests_per_minute=2))
    client = TestClient(app, client=(CLIENT_IP, 40000))

    assert client.get("/version").status_code == 200
    assert client.get("/version").status_code == 200

    response = client.get("/version")
    assert response.status_code == 429
    assert response.json()["detail"] == "Rate limit exceeded"
    assert response.headers["x-frame-options"] == "DENY"


def test_lifespan_runs_sweep_task(app, registry):
    with TestClient(app, client=(CLIENT_IP, 40000)):
        assert registry.sweeping

    assert not registry.sweeping


def test_default_app_builds_own_registry():
    app = create_app()
    client = TestClient(app, client=(CLIENT_IP, 40000))

    assert client.get("/servers.txt").text == ""
    assert isinstance(app.state.registry, ServerRegistry)


def test_file_logging(tmp_path):
    config = AppConfig(log_file="directory.log", config_path=tmp_path / "config.json")

    handler = configure_file_logging(config)
    try:
        assert handler is not None
        logging.getLogger("main").warning("hello from the directory")
        handler.flush()
        assert "hello from the directory" in (tmp_path / "directory.log").read_text(encoding="utf-8")
    finally:
        logging.getLogger().removeHandler(handler)
        handler.close()


def test_file_logging_disabled_or_unsafe(tmp_path):
    assert configure_file_logging(AppConfig(log_enabled=False)) is None
    assert configure_file_logging(AppConfig(log_file="/etc/lusd.log", config_path=tmp_path / "c.json")) is None
