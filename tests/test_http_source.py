"""
Tests for the HTTP transaction source.

These tests use responses library to mock HTTP requests,
validating paging and error mapping without a real API.
"""

from decimal import Decimal

import pytest
import responses

from cash_clearing.errors import FatalError, TransientIOError
from cash_clearing.sources import HttpTransactionSource


def _record(tx_id: str, amount: str = "125.00", **extra) -> dict:
    record = {
        "id": tx_id,
        "amount": amount,
        "currency": "usd",
        "description": "VISA CARD BATCH",
        "transaction_date": "2024-03-15",
        "account_id": "ACC-1",
    }
    record.update(extra)
    return record


class TestHttpTransactionSource:
    """Test the remote unresolved-transactions client."""

    BASE_URL = "http://recon.test/api"
    TOKEN = "test-token-12345"

    def _source(self) -> HttpTransactionSource:
        return HttpTransactionSource(self.BASE_URL, self.TOKEN, max_retries=0)

    @responses.activate
    def test_fetch_first_page(self):
        """First page is requested without a cursor."""
        responses.add(
            responses.GET,
            f"{self.BASE_URL}/transactions/unmatched",
            json={
                "transactions": [_record("BT1"), _record("BT2", amount="-40.5")],
                "next_cursor": "BT2",
                "has_more": True,
            },
            status=200,
        )

        page = self._source().fetch_unmatched(None, 2)

        assert [t.id for t in page.transactions] == ["BT1", "BT2"]
        assert page.transactions[1].amount == Decimal("-40.5")
        assert page.transactions[0].currency == "USD"
        assert page.next_cursor == "BT2"
        assert page.has_more is True
        assert page.rejected == []

        request = responses.calls[0].request
        assert "limit=2" in request.url
        assert "cursor=" not in request.url
        assert request.headers["Authorization"] == f"Bearer {self.TOKEN}"

    @responses.activate
    def test_fetch_with_cursor(self):
        responses.add(
            responses.GET,
            f"{self.BASE_URL}/transactions/unmatched",
            json={"transactions": [], "next_cursor": None, "has_more": False},
            status=200,
        )

        page = self._source().fetch_unmatched("BT2", 50)

        assert len(page) == 0
        assert page.has_more is False
        assert "cursor=BT2" in responses.calls[0].request.url

    @responses.activate
    def test_invalid_records_are_rejected_not_fatal(self):
        """A bad record is reported on the page; the rest still load."""
        responses.add(
            responses.GET,
            f"{self.BASE_URL}/transactions/unmatched",
            json={
                "transactions": [
                    _record("BT1"),
                    _record("BT2", amount="abc"),
                    _record("BT3", transaction_date="15/03/2024"),
                ],
                "next_cursor": "BT3",
                "has_more": False,
            },
            status=200,
        )

        page = self._source().fetch_unmatched(None, 10)

        assert [t.id for t in page.transactions] == ["BT1"]
        assert [tx_id for tx_id, _ in page.rejected] == ["BT2", "BT3"]
        assert "Invalid amount" in page.rejected[0][1]
        assert page.next_cursor == "BT3"

    @responses.activate
    def test_records_without_id_get_distinct_keys(self):
        """Id-less rejects stay distinct within a page and across pages."""
        broken = {"amount": "1.00", "transaction_date": "2024-03-15"}
        responses.add(
            responses.GET,
            f"{self.BASE_URL}/transactions/unmatched",
            json={"transactions": [broken, _record("BT7"), broken, "garbage"], "has_more": True},
            status=200,
        )

        source = self._source()
        first = source.fetch_unmatched(None, 10)
        second = source.fetch_unmatched("BT7", 10)

        first_keys = [tx_id for tx_id, _ in first.rejected]
        second_keys = [tx_id for tx_id, _ in second.rejected]
        assert first_keys == ["?:0", "?:2", "?:3"]
        assert second_keys == ["?BT7:0", "?BT7:2", "?BT7:3"]

    @pytest.mark.parametrize("status", [401, 403])
    @responses.activate
    def test_auth_failure_is_fatal(self, status):
        responses.add(
            responses.GET,
            f"{self.BASE_URL}/transactions/unmatched",
            json={"detail": "Invalid token."},
            status=status,
        )

        with pytest.raises(FatalError, match=str(status)):
            self._source().fetch_unmatched(None, 10)

    @responses.activate
    def test_server_error_is_transient(self):
        responses.add(
            responses.GET,
            f"{self.BASE_URL}/transactions/unmatched",
            json={"error": "Internal server error"},
            status=500,
        )

        with pytest.raises(TransientIOError):
            self._source().fetch_unmatched(None, 10)

    @responses.activate
    def test_connection_error_is_transient(self):
        """Unregistered URLs raise ConnectionError inside responses."""
        with pytest.raises(TransientIOError, match="Failed to reach"):
            self._source().fetch_unmatched(None, 10)

    @responses.activate
    def test_malformed_page_is_transient(self):
        responses.add(
            responses.GET,
            f"{self.BASE_URL}/transactions/unmatched",
            json={"items": []},
            status=200,
        )

        with pytest.raises(TransientIOError, match="Malformed"):
            self._source().fetch_unmatched(None, 10)

    @responses.activate
    def test_count(self):
        responses.add(
            responses.GET,
            f"{self.BASE_URL}/transactions/unmatched/count",
            json={"count": 42},
            status=200,
        )

        assert self._source().count() == 42

    def test_no_token_no_auth_header(self):
        source = HttpTransactionSource(f"{self.BASE_URL}/")
        assert "Authorization" not in source.session.headers
        assert source.base_url == self.BASE_URL
        source.close()
