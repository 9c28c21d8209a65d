"""
Tests for feed URL validation (SSRF protection).
"""

import socket

import pytest

from feedkeeper import url_validator
from feedkeeper.url_validator import SSRFError, is_ip_blocked, validate_url


class TestAllowedUrls:
    """URLs a feed may legitimately live at."""

    @pytest.mark.parametrize("url", [
        "https://example.com/feed.xml",
        "http://example.com/feed.xml",
        "http://8.8.8.8/feed",
        "https://example.com:8443/rss",
    ])
    def test_allowed(self, url):
        assert validate_url(url, resolve_dns=False) == url

    def test_whitespace_stripped(self):
        assert validate_url("  https://example.com/feed  ", resolve_dns=False) == "https://example.com/feed"


class TestRejectedUrls:
    """URLs that must never be fetched."""

    @pytest.mark.parametrize("url", ["file:///etc/passwd", "ftp://example.com/file", "gopher://example.com/"])
    def test_scheme(self, url):
        with pytest.raises(SSRFError, match="scheme.*not allowed"):
            validate_url(url, resolve_dns=False)

    @pytest.mark.parametrize("url", [
        "http://localhost/admin",
        "http://localhost.localdomain/",
        "http://metadata.google.internal/",
        "http://myserver.local/",
        "http://api.internal/",
        "http://app.localhost/",
    ])
    def test_hostname(self, url):
        with pytest.raises(SSRFError, match="not allowed"):
            validate_url(url, resolve_dns=False)

    @pytest.mark.parametrize("url", [
        "http://127.0.0.1/admin",
        "http://127.0.0.100/",
        "http://10.0.0.1/",
        "http://172.16.0.1/",
        "http://192.168.1.1/",
        "http://100.64.0.1/",
        "http://169.254.169.254/latest/meta-data/",
        "http://[::1]/",
        "http://[::ffff:127.0.0.1]/",
    ])
    def test_blocked_address(self, url):
        with pytest.raises(SSRFError, match="not allowed"):
            validate_url(url, resolve_dns=False)

    def test_empty(self):
        with pytest.raises(SSRFError, match="empty"):
            validate_url("   ")

    def test_missing_hostname(self):
        with pytest.raises(SSRFError, match="hostname"):
            validate_url("http:///path")

    def test_not_a_url(self):
        with pytest.raises(SSRFError):
            validate_url("not-a-url")

    def test_hostname_too_long(self):
        with pytest.raises(SSRFError, match="too long"):
            validate_url("http://" + "a" * 250 + ".com/", resolve_dns=False)

    def test_bad_port(self):
        with pytest.raises(SSRFError, match="Invalid URL"):
            validate_url("http://example.com:99999/", resolve_dns=False)


class TestDnsResolution:
    """Hostnames are checked against the addresses they resolve to."""

    def test_resolves_to_private_address(self, monkeypatch):
        def fake_getaddrinfo(host, port, proto=0):
            return [(socket.AF_INET, socket.SOCK_STREAM, proto, "", ("10.1.2.3", port))]

        monkeypatch.setattr(url_validator.socket, "getaddrinfo", fake_getaddrinfo)
        with pytest.raises(SSRFError, match="resolves to blocked IP"):
            validate_url("https://rebind.example.com/feed")

    def test_resolves_to_public_address(self, monkeypatch):
        def fake_getaddrinfo(host, port, proto=0):
            assert port == 443
            return [(socket.AF_INET, socket.SOCK_STREAM, proto, "", ("93.184.216.34", port))]

        monkeypatch.setattr(url_validator.socket, "getaddrinfo", fake_getaddrinfo)
        assert validate_url("https://example.com/feed") == "https://example.com/feed"

    def test_unresolvable_host_allowed(self, monkeypatch):
        def fake_getaddrinfo(host, port, proto=0):
            raise socket.gaierror("Name or service not known")

        monkeypatch.setattr(url_validator.socket, "getaddrinfo", fake_getaddrinfo)
        assert validate_url("https://nowhere.example/feed") == "https://nowhere.example/feed"


class TestIsIpBlocked:
    """Tests for the address range helper."""

    @pytest.mark.parametrize("ip", ["10.0.0.1", "172.16.0.1", "192.168.1.1", "127.0.0.100",
                                    "169.254.169.254", "fe80::1", "fd00::1"])
    def test_blocked(self, ip):
        assert is_ip_blocked(ip) is True

    @pytest.mark.parametrize("ip", ["8.8.8.8", "1.1.1.1", "93.184.216.34", "2606:4700::1111"])
    def test_public(self, ip):
        assert is_ip_blocked(ip) is False

    def test_not_an_address(self):
        assert is_ip_blocked("example.com") is False
