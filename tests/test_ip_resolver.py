"""Unit tests for IPResolver."""

from unittest.mock import MagicMock, patch

import pytest
import requests

from cloudflare_ddns.cli import (
    AddressFamily,
    EmptyResponseError,
    InvalidAddressError,
    IPResolver,
    ResolveError,
    TransportError,
)


def make_response(text: str) -> MagicMock:
    response = MagicMock()
    response.raise_for_status = MagicMock()
    response.text = text
    return response


class TestResolve:
    """Tests for fetching the public address."""

    def test_returns_body_as_address(self) -> None:
        resolver = IPResolver(timeout_seconds=5)

        with patch.object(resolver._session, "get") as mock_get:
            mock_get.return_value = make_response("203.0.113.5")

            address = resolver.resolve("https://ipv4.example.test")

            assert address == "203.0.113.5"
            mock_get.assert_called_once_with("https://ipv4.example.test", timeout=5)

    def test_strips_surrounding_whitespace(self) -> None:
        resolver = IPResolver()

        with patch.object(resolver._session, "get") as mock_get:
            mock_get.return_value = make_response("2001:db8::1\n")

            assert resolver.resolve("https://ipv6.example.test") == "2001:db8::1"

    def test_no_timeout_passes_none(self) -> None:
        resolver = IPResolver(timeout_seconds=None)

        with patch.object(resolver._session, "get") as mock_get:
            mock_get.return_value = make_response("203.0.113.5")

            resolver.resolve("https://ipv4.example.test")

            mock_get.assert_called_once_with("https://ipv4.example.test", timeout=None)

    def test_does_not_validate_by_default(self) -> None:
        """Any non-empty body is accepted when validation is off."""
        resolver = IPResolver()

        with patch.object(resolver._session, "get") as mock_get:
            mock_get.return_value = make_response("not-an-ip")

            assert resolver.resolve("https://ipv4.example.test", AddressFamily.IPV4) == "not-an-ip"


class TestResolveErrors:
    """Tests for lookup failures."""

    def test_connection_error_raises_transport_error(self) -> None:
        resolver = IPResolver()

        with patch.object(resolver._session, "get") as mock_get:
            mock_get.side_effect = requests.exceptions.ConnectionError("Connection refused")

            with pytest.raises(TransportError):
                resolver.resolve("https://ipv4.example.test")

    def test_timeout_raises_transport_error(self) -> None:
        resolver = IPResolver()

        with patch.object(resolver._session, "get") as mock_get:
            mock_get.side_effect = requests.exceptions.Timeout("timed out")

            with pytest.raises(TransportError):
                resolver.resolve("https://ipv4.example.test")

    def test_http_error_status_raises_transport_error(self) -> None:
        resolver = IPResolver()

        with patch.object(resolver._session, "get") as mock_get:
            response = make_response("Bad Gateway")
            response.raise_for_status.side_effect = requests.exceptions.HTTPError("502")
            mock_get.return_value = response

            with pytest.raises(TransportError):
                resolver.resolve("https://ipv4.example.test")

    def test_empty_body_raises_empty_response_error(self) -> None:
        resolver = IPResolver()

        with patch.object(resolver._session, "get") as mock_get:
            mock_get.return_value = make_response("")

            with pytest.raises(EmptyResponseError):
                resolver.resolve("https://ipv4.example.test")

    def test_whitespace_only_body_is_empty(self) -> None:
        resolver = IPResolver()

        with patch.object(resolver._session, "get") as mock_get:
            mock_get.return_value = make_response("  \n")

            with pytest.raises(EmptyResponseError):
                resolver.resolve("https://ipv4.example.test")

    def test_errors_share_resolve_error_base(self) -> None:
        assert issubclass(TransportError, ResolveError)
        assert issubclass(EmptyResponseError, ResolveError)
        assert issubclass(InvalidAddressError, ResolveError)


class TestValidation:
    """Tests for optional address family validation."""

    @pytest.mark.parametrize(
        "body,family",
        [
            ("203.0.113.5", AddressFamily.IPV4),
            ("2001:db8::1", AddressFamily.IPV6),
        ],
    )
    def test_accepts_matching_family(self, body: str, family: AddressFamily) -> None:
        resolver = IPResolver(validate=True)

        with patch.object(resolver._session, "get") as mock_get:
            mock_get.return_value = make_response(body)

            assert resolver.resolve("https://lookup.example.test", family) == body

    def test_rejects_wrong_family(self) -> None:
        resolver = IPResolver(validate=True)

        with patch.object(resolver._session, "get") as mock_get:
            mock_get.return_value = make_response("203.0.113.5")

            with pytest.raises(InvalidAddressError):
                resolver.resolve("https://ipv6.example.test", AddressFamily.IPV6)

    def test_rejects_garbage(self) -> None:
        resolver = IPResolver(validate=True)

        with patch.object(resolver._session, "get") as mock_get:
            mock_get.return_value = make_response("<html>oops</html>")

            with pytest.raises(InvalidAddressError):
                resolver.resolve("https://ipv4.example.test", AddressFamily.IPV4)
