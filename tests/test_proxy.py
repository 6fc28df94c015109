"""Tests for the Caddy proxy controller."""

from unittest import mock

import pytest
import requests

from deploy.proxy import ProxyController, parse_backend_port, render_caddyfile
from shipyard.errors import PreconditionError, ProxyError, ProxyReloadError


@pytest.fixture
def proxy(host, clock):
    return ProxyController(host, settle_seconds=0, sleep=clock.sleep)


class TestCaddyfile:
    def test_domain_template(self, make_target):
        text = render_caddyfile(make_target(DOMAIN="app1.example.com"), 3000)
        assert text.startswith("app1.example.com {")
        assert "reverse_proxy localhost:3000" in text
        assert "Strict-Transport-Security" in text
        assert "encode gzip" in text

    def test_plain_http_without_domain(self, target):
        text = render_caddyfile(target, 3001)
        assert text.startswith(":80 {")
        assert "reverse_proxy localhost:3001" in text

    def test_parse_backend_port(self, target):
        assert parse_backend_port(render_caddyfile(target, 3001)) == 3001
        assert parse_backend_port(":80 {\n    respond 200\n}\n") is None


class TestEnsureRunning:
    def test_creates_proxy(self, host, proxy, target):
        status = proxy.ensure_running(target)

        assert status == "Up 2 seconds"
        assert parse_backend_port(host.files[target.caddyfile_path]) == target.app_port
        argv = host.containers[target.proxy_name]["argv"]
        assert "--restart=always" in argv
        assert "--network=host" in argv
        assert f"{target.caddyfile_path}:/etc/caddy/Caddyfile:ro" in argv

    def test_replaces_existing_proxy(self, host, proxy, target):
        host.add_container(target.proxy_name, image="caddy:old")
        proxy.ensure_running(target)
        assert host.containers[target.proxy_name]["image"] == "docker.io/library/caddy:latest"

    def test_runtime_missing(self, host, proxy, target):
        host.runtime_installed = False
        with pytest.raises(PreconditionError):
            proxy.ensure_running(target)

    def test_proxy_exits_immediately(self, host, proxy, target):
        host.crash_on_start.add(target.proxy_name)
        with pytest.raises(ProxyError, match="not running"):
            proxy.ensure_running(target)


class TestPointTo:
    def test_switches_route_and_reloads(self, proxied_host, proxy, target):
        proxy.point_to(target, target.alt_port)

        assert proxy.current_port(target) == target.alt_port
        assert proxied_host.live_port == target.alt_port
        assert proxied_host.commands[-1][-4:] == ["caddy", "reload", "--config", "/etc/caddy/Caddyfile"]

    def test_reload_failure_restores_previous_file(self, proxied_host, proxy, target):
        proxied_host.reload_results = [False, True]
        with pytest.raises(ProxyReloadError) as exc:
            proxy.point_to(target, target.alt_port)

        assert exc.value.restored
        assert proxy.current_port(target) == target.app_port
        assert proxied_host.live_port == target.app_port

    def test_reload_failure_without_restore(self, proxied_host, proxy, target):
        proxied_host.reload_results = [False, False]
        with pytest.raises(ProxyReloadError) as exc:
            proxy.point_to(target, target.alt_port)
        assert not exc.value.restored

    def test_missing_route(self, proxied_host, proxy, target):
        proxied_host.files[target.caddyfile_path] = ":80 {\n    respond 200\n}\n"
        with pytest.raises(ProxyError, match="No 'localhost:<port>' route"):
            proxy.point_to(target, target.alt_port)


class TestVerifyTraffic:
    def test_public_url(self, proxy, make_target):
        assert proxy.public_url(make_target(DOMAIN="app1.example.com")) == "https://app1.example.com/"
        assert proxy.public_url(make_target(SSH_HOST="10.0.0.5")) == "http://10.0.0.5/"

    def test_all_requests_must_succeed(self, proxy, make_target):
        target = make_target(DOMAIN="app1.example.com")
        ok = mock.Mock(status_code=200)
        with mock.patch("deploy.proxy.requests.get", side_effect=[ok, requests.ConnectionError(), ok]) as get:
            assert not proxy.verify_traffic(target)
        assert get.call_count == 3

        with mock.patch("deploy.proxy.requests.get", return_value=ok):
            assert proxy.verify_traffic(target)
