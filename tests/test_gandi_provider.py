"""Unit tests for GandiLiveDNSProvider."""

from unittest.mock import MagicMock, patch

import pytest
import requests

from node_dns.cli import DNSUpdateError, GandiLiveDNSProvider, ZoneRecord


def make_provider() -> GandiLiveDNSProvider:
    return GandiLiveDNSProvider(
        "secret-key", url="https://dns.example.test/v5/livedns/", timeout_seconds=12
    )


class TestGandiSession:
    """Tests for provider session setup."""

    def test_api_key_sent_as_authorization_header(self) -> None:
        """The API key is attached to every request on the session."""
        provider = make_provider()

        assert provider._session.headers["Authorization"] == "Apikey secret-key"

    def test_name(self) -> None:
        assert make_provider().name == "Gandi LiveDNS"


class TestGandiChangeDomainRecords:
    """Tests for the batched record replacement call."""

    def test_change_domain_records_puts_all_records_in_one_call(self) -> None:
        """All records go out in a single PUT scoped to the domain."""
        provider = make_provider()
        records = [
            ZoneRecord(rrset_name="a", rrset_values=("10.0.0.1", "10.0.0.2")),
            ZoneRecord(rrset_name="b", rrset_values=("10.0.0.1", "10.0.0.2")),
        ]

        with patch.object(provider._session, "put") as mock_put:
            mock_response = MagicMock()
            mock_response.raise_for_status = MagicMock()
            mock_put.return_value = mock_response

            provider.change_domain_records("example.com", records)

            mock_put.assert_called_once_with(
                "https://dns.example.test/v5/livedns/domains/example.com/records",
                json={
                    "items": [
                        {
                            "rrset_type": "A",
                            "rrset_name": "a",
                            "rrset_ttl": 300,
                            "rrset_values": ["10.0.0.1", "10.0.0.2"],
                        },
                        {
                            "rrset_type": "A",
                            "rrset_name": "b",
                            "rrset_ttl": 300,
                            "rrset_values": ["10.0.0.1", "10.0.0.2"],
                        },
                    ]
                },
                timeout=12,
            )

    def test_empty_value_list_is_sent_as_is(self) -> None:
        """A record with no IPs is still submitted, with an empty value list."""
        provider = make_provider()

        with patch.object(provider._session, "put") as mock_put:
            mock_put.return_value = MagicMock()

            provider.change_domain_records("example.com", [ZoneRecord("a", ())])

            items = mock_put.call_args.kwargs["json"]["items"]
            assert items == [
                {"rrset_type": "A", "rrset_name": "a", "rrset_ttl": 300, "rrset_values": []}
            ]

    def test_http_error_is_wrapped(self) -> None:
        """An HTTP error status surfaces as DNSUpdateError chained to the cause."""
        provider = make_provider()
        http_error = requests.exceptions.HTTPError("403 Client Error: Forbidden")

        with patch.object(provider._session, "put") as mock_put:
            mock_response = MagicMock()
            mock_response.raise_for_status.side_effect = http_error
            mock_put.return_value = mock_response

            with pytest.raises(DNSUpdateError) as exc_info:
                provider.change_domain_records("example.com", [ZoneRecord("a", ("1.2.3.4",))])

        assert "failed to update zone records for example.com" in str(exc_info.value)
        assert exc_info.value.__cause__ is http_error

    def test_connection_error_is_wrapped(self) -> None:
        """Transport failures surface as DNSUpdateError too."""
        provider = make_provider()

        with patch.object(provider._session, "put") as mock_put:
            mock_put.side_effect = requests.exceptions.ConnectionError("Connection refused")

            with pytest.raises(DNSUpdateError):
                provider.change_domain_records("example.com", [ZoneRecord("a", ("1.2.3.4",))])
