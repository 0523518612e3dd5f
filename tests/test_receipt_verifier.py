"""
Tests for the Apple signed transaction pipeline.

SignedDataVerifier and ReceiptUtility are patched; the history API is a
fake client returning library response models.
"""

import base64
from unittest.mock import MagicMock, patch

import httpx
import pytest
from appstoreserverlibrary.api_client import APIException
from appstoreserverlibrary.models.Environment import Environment
from appstoreserverlibrary.models.HistoryResponse import HistoryResponse
from appstoreserverlibrary.models.OrderLookupResponse import OrderLookupResponse
from appstoreserverlibrary.models.TransactionHistoryRequest import Order, ProductType
from appstoreserverlibrary.signed_data_verifier import VerificationException, VerificationStatus

from purple_api.exceptions import (
    AppStoreUnavailableError,
    MalformedPayloadError,
    MalformedReceiptError,
    SignatureInvalidError,
)
from purple_api.models.domain import TransactionType
from purple_api.services.receipt_verifier import (
    extract_transaction_id,
    fetch_history,
    fetch_validated_transactions,
    fetch_validated_transactions_from_order_id,
    filter_by_account,
    to_canonical,
    verify_and_decode,
)

from conftest import T0

TOKEN = "7c9e6679-7425-40de-944b-e07fc1f90ae7"
OTHER_TOKEN = "16fd2706-8baf-433b-82eb-8c7fada847da"
ANCHORS = (b"root-g3",)


class FakeAppStoreClient:
    """Serves a fixed sequence of history pages, then optional failures."""

    def __init__(
        self, pages=(), order_transactions=(), fail_at_page=None, order_error=None, page_error=None
    ):
        self.pages = list(pages)
        self.order_transactions = list(order_transactions)
        self.fail_at_page = fail_at_page
        self.page_error = page_error or APIException(500)
        self.order_error = order_error
        self.history_calls = []

    async def get_transaction_history(self, transaction_id, revision, request):
        self.history_calls.append((transaction_id, revision, request))
        index = len(self.history_calls) - 1
        if index == self.fail_at_page:
            raise self.page_error
        return self.pages[index]

    async def look_up_order_id(self, order_id):
        if self.order_error is not None:
            raise self.order_error
        return OrderLookupResponse(signedTransactions=self.order_transactions)


@pytest.fixture
def verifier_returning():
    """Patch SignedDataVerifier so signed blob names map to decoded payloads."""

    def _patch(mapping):
        instance = MagicMock()
        instance.verify_and_decode_signed_transaction.side_effect = lambda signed: mapping[signed]
        return patch(
            "purple_api.services.receipt_verifier.SignedDataVerifier",
            return_value=instance,
        )

    return _patch


# ============================================================================
# extract_transaction_id
# ============================================================================


class TestExtractTransactionId:
    """Receipt container parsing."""

    def test_returns_embedded_id(self):
        """The id extracted by ReceiptUtility is returned."""
        receipt = base64.b64encode(b"receipt").decode()
        with patch("purple_api.services.receipt_verifier.ReceiptUtility") as utility:
            utility.return_value.extract_transaction_id_from_app_receipt.return_value = "1000"
            assert extract_transaction_id(receipt) == "1000"

    def test_container_without_id(self):
        """A receipt with no transaction yields None, not an error."""
        receipt = base64.b64encode(b"receipt").decode()
        with patch("purple_api.services.receipt_verifier.ReceiptUtility") as utility:
            utility.return_value.extract_transaction_id_from_app_receipt.return_value = None
            assert extract_transaction_id(receipt) is None

    def test_unparseable_container(self):
        """A container the utility cannot parse yields None."""
        receipt = base64.b64encode(b"not asn.1").decode()
        with patch("purple_api.services.receipt_verifier.ReceiptUtility") as utility:
            utility.return_value.extract_transaction_id_from_app_receipt.side_effect = ValueError
            assert extract_transaction_id(receipt) is None

    def test_not_base64(self):
        """Input that is not base64 is a validation error."""
        with pytest.raises(MalformedReceiptError):
            extract_transaction_id("%%% not base64 %%%")


# ============================================================================
# fetch_history
# ============================================================================


class TestFetchHistory:
    """Pagination."""

    async def test_concatenates_pages_in_order(self):
        """Revision tokens are carried forward and pages concatenated."""
        client = FakeAppStoreClient(
            pages=[
                HistoryResponse(signedTransactions=["a", "b"], hasMore=True, revision="r1"),
                HistoryResponse(signedTransactions=["c"], hasMore=True, revision="r2"),
                HistoryResponse(signedTransactions=["d"], hasMore=False, revision="r3"),
            ]
        )

        history = await fetch_history(client, "1000")

        assert history.signed_transactions == ("a", "b", "c", "d")
        assert not history.truncated
        assert [call[1] for call in client.history_calls] == [None, "r1", "r2"]

    async def test_request_filters(self):
        """Ascending, non-revoked, auto-renewable only."""
        client = FakeAppStoreClient(pages=[HistoryResponse(signedTransactions=[], hasMore=False)])
        await fetch_history(client, "1000")

        request = client.history_calls[0][2]
        assert request.sort == Order.ASCENDING
        assert request.revoked is False
        assert request.productTypes == [ProductType.AUTO_RENEWABLE]

    async def test_failed_page_truncates(self):
        """A failing page ends the walk with what was collected."""
        client = FakeAppStoreClient(
            pages=[HistoryResponse(signedTransactions=["a"], hasMore=True, revision="r1")],
            fail_at_page=1,
        )

        history = await fetch_history(client, "1000")

        assert history.signed_transactions == ("a",)
        assert history.truncated

    async def test_undecodable_page_truncates(self):
        """Any page error, not only API errors, ends the walk with what was collected."""
        client = FakeAppStoreClient(
            pages=[HistoryResponse(signedTransactions=["a"], hasMore=True, revision="r1")],
            fail_at_page=1,
            page_error=ValueError("body does not deserialize"),
        )

        history = await fetch_history(client, "1000")

        assert history.signed_transactions == ("a",)
        assert history.truncated

    async def test_first_page_failure(self):
        """Failure on the first page returns an empty, truncated history."""
        client = FakeAppStoreClient(fail_at_page=0)
        history = await fetch_history(client, "1000")
        assert history.signed_transactions == ()
        assert history.truncated

    async def test_page_without_transactions(self):
        """Pages with no signedTransactions are skipped."""
        client = FakeAppStoreClient(
            pages=[
                HistoryResponse(signedTransactions=None, hasMore=True, revision="r1"),
                HistoryResponse(signedTransactions=["a"], hasMore=False),
            ]
        )
        history = await fetch_history(client, "1000")
        assert history.signed_transactions == ("a",)


# ============================================================================
# verify_and_decode
# ============================================================================


class TestVerifyAndDecode:
    """Signature verification."""

    async def test_preserves_order(self, verifier_returning, decoded_transaction):
        """Decoded payloads come back in input order."""
        first = decoded_transaction(transaction_id="1")
        second = decoded_transaction(transaction_id="2")
        with verifier_returning({"s1": first, "s2": second}) as verifier_cls:
            decoded = await verify_and_decode(
                ["s2", "s1"], ANCHORS, Environment.SANDBOX, "com.example.purple"
            )

        assert decoded == [second, first]
        verifier_cls.assert_called_once_with(
            list(ANCHORS), True, Environment.SANDBOX, "com.example.purple", None
        )

    async def test_one_bad_signature_fails_batch(self, decoded_transaction):
        """Verification is all-or-nothing."""
        good = decoded_transaction()

        def verify(signed):
            if signed == "bad":
                raise VerificationException(VerificationStatus.INVALID_CERTIFICATE)
            return good

        instance = MagicMock()
        instance.verify_and_decode_signed_transaction.side_effect = verify
        with patch(
            "purple_api.services.receipt_verifier.SignedDataVerifier", return_value=instance
        ):
            with pytest.raises(SignatureInvalidError) as exc_info:
                await verify_and_decode(
                    ["good", "bad", "good"], ANCHORS, Environment.SANDBOX, "com.example.purple"
                )

        assert exc_info.value.status == "INVALID_CERTIFICATE"

    async def test_payload_without_transaction_id(self, verifier_returning, decoded_transaction):
        """A verified payload missing its id is malformed."""
        payload = decoded_transaction()
        payload.transactionId = None
        with verifier_returning({"s1": payload}):
            with pytest.raises(MalformedPayloadError):
                await verify_and_decode(["s1"], ANCHORS, Environment.SANDBOX, "b")

    async def test_empty_batch(self):
        """Nothing to verify yields nothing."""
        assert await verify_and_decode([], ANCHORS, Environment.SANDBOX, "b") == []


# ============================================================================
# filter_by_account / to_canonical
# ============================================================================


class TestFilterByAccount:
    """Account binding."""

    def test_case_insensitive(self, decoded_transaction):
        """Tokens match regardless of case."""
        tx = decoded_transaction(account_token="ABC-123")
        assert filter_by_account([tx], "abc-123") == [tx]

    def test_drops_other_accounts(self, decoded_transaction):
        """Transactions of other accounts and unbound ones are dropped."""
        mine = decoded_transaction(transaction_id="1", account_token=TOKEN)
        theirs = decoded_transaction(transaction_id="2", account_token=OTHER_TOKEN)
        unbound = decoded_transaction(transaction_id="3", account_token=None)

        assert filter_by_account([mine, theirs, unbound], TOKEN.upper()) == [mine]

    def test_no_match_is_empty(self, decoded_transaction):
        """No match is an empty list, not an error."""
        assert filter_by_account([decoded_transaction(account_token=OTHER_TOKEN)], TOKEN) == []


class TestToCanonical:
    """Mapping to canonical transactions."""

    def test_milliseconds_to_seconds(self, decoded_transaction):
        """Apple millisecond timestamps become epoch seconds."""
        tx = to_canonical(
            decoded_transaction(transaction_id="1000", purchase_date=T0, expires_date=T0 + 3600)
        )
        assert tx.type == TransactionType.IAP
        assert tx.id == "1000"
        assert tx.start_date == T0
        assert tx.purchased_date == T0
        assert tx.end_date == T0 + 3600
        assert tx.duration is None

    def test_missing_expiry(self, decoded_transaction):
        """Subscription payloads must carry expiresDate."""
        with pytest.raises(MalformedPayloadError):
            to_canonical(decoded_transaction(expires_date=None))


# ============================================================================
# Orchestration
# ============================================================================


class TestFetchValidatedTransactions:
    """History -> verify -> filter -> canonical."""

    async def test_returns_account_transactions(self, verifier_returning, decoded_transaction):
        """Only the caller's transactions are returned, in order."""
        client = FakeAppStoreClient(
            pages=[HistoryResponse(signedTransactions=["s1", "s2", "s3"], hasMore=False)]
        )
        mapping = {
            "s1": decoded_transaction(transaction_id="1", account_token=TOKEN),
            "s2": decoded_transaction(transaction_id="2", account_token=OTHER_TOKEN),
            "s3": decoded_transaction(transaction_id="3", account_token=TOKEN.upper()),
        }
        with verifier_returning(mapping):
            result = await fetch_validated_transactions(
                client, "1", ANCHORS, Environment.SANDBOX, "b", TOKEN
            )

        assert [t.id for t in result] == ["1", "3"]

    async def test_no_matching_transactions_is_none(self, verifier_returning, decoded_transaction):
        """Nothing for this account is None, distinct from an error."""
        client = FakeAppStoreClient(
            pages=[HistoryResponse(signedTransactions=["s1"], hasMore=False)]
        )
        with verifier_returning({"s1": decoded_transaction(account_token=OTHER_TOKEN)}):
            result = await fetch_validated_transactions(
                client, "1", ANCHORS, Environment.SANDBOX, "b", TOKEN
            )
        assert result is None

    async def test_history_failure_yields_partial(self, verifier_returning, decoded_transaction):
        """A failed page never fails the call."""
        client = FakeAppStoreClient(
            pages=[HistoryResponse(signedTransactions=["s1"], hasMore=True, revision="r1")],
            fail_at_page=1,
        )
        with verifier_returning({"s1": decoded_transaction(account_token=TOKEN)}):
            result = await fetch_validated_transactions(
                client, "1", ANCHORS, Environment.SANDBOX, "b", TOKEN
            )
        assert len(result) == 1


class TestFetchFromOrderId:
    """Order id lookups."""

    async def test_without_identity_no_filter(self, verifier_returning, decoded_transaction):
        """Support lookups return every transaction of the order."""
        client = FakeAppStoreClient(order_transactions=["s1", "s2"])
        mapping = {
            "s1": decoded_transaction(transaction_id="1", account_token=TOKEN),
            "s2": decoded_transaction(transaction_id="2", account_token=OTHER_TOKEN),
        }
        with verifier_returning(mapping):
            result = await fetch_validated_transactions_from_order_id(
                client, "MQ1234", ANCHORS, Environment.SANDBOX, "b", None
            )
        assert [t.id for t in result] == ["1", "2"]

    async def test_with_identity_filters(self, verifier_returning, decoded_transaction):
        """With a token only matching transactions remain."""
        client = FakeAppStoreClient(order_transactions=["s1", "s2"])
        mapping = {
            "s1": decoded_transaction(transaction_id="1", account_token=TOKEN),
            "s2": decoded_transaction(transaction_id="2", account_token=OTHER_TOKEN),
        }
        with verifier_returning(mapping):
            result = await fetch_validated_transactions_from_order_id(
                client, "MQ1234", ANCHORS, Environment.SANDBOX, "b", OTHER_TOKEN
            )
        assert [t.id for t in result] == ["2"]

    async def test_empty_order(self):
        """An order with no transactions is None."""
        client = FakeAppStoreClient(order_transactions=[])
        result = await fetch_validated_transactions_from_order_id(
            client, "MQ1234", ANCHORS, Environment.SANDBOX, "b", None
        )
        assert result is None

    @pytest.mark.parametrize(
        "error", [APIException(503), httpx.ConnectError("refused")]
    )
    async def test_lookup_failure(self, error):
        """Order lookup failures surface as AppStoreUnavailable."""
        client = FakeAppStoreClient(order_error=error)
        with pytest.raises(AppStoreUnavailableError):
            await fetch_validated_transactions_from_order_id(
                client, "MQ1234", ANCHORS, Environment.SANDBOX, "b", None
            )
