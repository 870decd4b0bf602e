import io
import json
import unittest
from unittest.mock import MagicMock, patch
from urllib.error import HTTPError, URLError

from backend.liability_source import (
    DEFAULT_PLAID_ERROR_MESSAGE,
    CompositeLiabilitySource,
    LiabilitySourceUnavailable,
    PlaidLiabilitySource,
    StaticLiabilitySource,
    empty_liabilities,
)


def plaid_response(payload):
    response = MagicMock()
    response.__enter__.return_value = io.BytesIO(json.dumps(payload).encode("utf-8"))
    response.__exit__.return_value = False
    return response


def plaid_http_error(status: int, body: dict) -> HTTPError:
    return HTTPError(
        "https://sandbox.plaid.com/liabilities/get",
        status,
        "error",
        hdrs=None,
        fp=io.BytesIO(json.dumps(body).encode("utf-8")),
    )


class StaticLiabilitySourceTests(unittest.TestCase):
    def test_fills_missing_kinds(self) -> None:
        source = StaticLiabilitySource({"credit": [{"account_id": "acc"}]})

        liabilities = source.get_liabilities(None)

        self.assertEqual(liabilities["credit"], [{"account_id": "acc"}])
        self.assertEqual(liabilities["student"], [])
        self.assertEqual(liabilities["mortgage"], [])

    def test_returns_copies(self) -> None:
        source = StaticLiabilitySource({"credit": [{"account_id": "acc"}]})

        source.get_liabilities("token")["credit"].clear()

        self.assertEqual(len(source.get_liabilities("token")["credit"]), 1)


class PlaidLiabilitySourceTests(unittest.TestCase):
    def setUp(self) -> None:
        self.source = PlaidLiabilitySource(client_id="client", secret="secret", environment="sandbox")

    def test_without_access_token_returns_empty_payload(self) -> None:
        with patch("backend.liability_source.urlopen") as urlopen:
            self.assertEqual(self.source.get_liabilities(None), empty_liabilities())

        urlopen.assert_not_called()

    def test_posts_credentials_and_token(self) -> None:
        payload = {"liabilities": {"credit": [{"account_id": "acc"}], "student": None}}
        with patch("backend.liability_source.urlopen", return_value=plaid_response(payload)) as urlopen:
            liabilities = self.source.get_liabilities("access-sandbox-1")

        self.assertEqual(
            liabilities,
            {"credit": [{"account_id": "acc"}], "student": [], "mortgage": []},
        )
        request = urlopen.call_args.args[0]
        self.assertEqual(request.full_url, "https://sandbox.plaid.com/liabilities/get")
        self.assertEqual(request.get_method(), "POST")
        self.assertEqual(
            json.loads(request.data.decode("utf-8")),
            {"client_id": "client", "secret": "secret", "access_token": "access-sandbox-1"},
        )

    def test_missing_credentials_raise_unavailable(self) -> None:
        source = PlaidLiabilitySource()

        with self.assertRaises(LiabilitySourceUnavailable):
            source.get_liabilities("access-sandbox-1")

    def test_unknown_environment_is_rejected(self) -> None:
        source = PlaidLiabilitySource(client_id="client", secret="secret", environment="staging")

        with self.assertRaises(ValueError):
            source.get_liabilities("access-sandbox-1")

    def test_http_error_carries_plaid_error_code(self) -> None:
        error = plaid_http_error(400, {"error_code": "ITEM_LOGIN_REQUIRED"})
        with patch("backend.liability_source.urlopen", side_effect=error):
            with self.assertRaises(LiabilitySourceUnavailable) as ctx:
                self.source.get_liabilities("access-sandbox-1")

        self.assertEqual(ctx.exception.error_code, "ITEM_LOGIN_REQUIRED")
        self.assertTrue(ctx.exception.login_required)
        self.assertIn("re-authenticate", ctx.exception.user_message)

    def test_unknown_error_code_uses_default_message(self) -> None:
        error = plaid_http_error(500, {"error_code": "SOMETHING_NEW"})
        with patch("backend.liability_source.urlopen", side_effect=error):
            with self.assertRaises(LiabilitySourceUnavailable) as ctx:
                self.source.get_liabilities("access-sandbox-1")

        self.assertFalse(ctx.exception.login_required)
        self.assertEqual(ctx.exception.user_message, DEFAULT_PLAID_ERROR_MESSAGE)

    def test_network_error_raises_unavailable(self) -> None:
        with patch("backend.liability_source.urlopen", side_effect=URLError("offline")):
            with self.assertRaises(LiabilitySourceUnavailable) as ctx:
                self.source.get_liabilities("access-sandbox-1")

        self.assertIsNone(ctx.exception.error_code)

    def test_response_without_liabilities_raises_unavailable(self) -> None:
        with patch("backend.liability_source.urlopen", return_value=plaid_response({"accounts": []})):
            with self.assertRaises(LiabilitySourceUnavailable):
                self.source.get_liabilities("access-sandbox-1")


class CompositeLiabilitySourceTests(unittest.TestCase):
    def test_falls_back_when_primary_is_unavailable(self) -> None:
        primary = PlaidLiabilitySource()
        fallback = StaticLiabilitySource({"mortgage": [{"account_id": "home"}]})

        liabilities = CompositeLiabilitySource(primary, fallback).get_liabilities("access-sandbox-1")

        self.assertEqual(liabilities["mortgage"], [{"account_id": "home"}])

    def test_uses_primary_when_available(self) -> None:
        primary = StaticLiabilitySource({"credit": [{"account_id": "acc"}]})
        fallback = StaticLiabilitySource({"mortgage": [{"account_id": "home"}]})

        liabilities = CompositeLiabilitySource(primary, fallback).get_liabilities(None)

        self.assertEqual(liabilities["credit"], [{"account_id": "acc"}])
        self.assertEqual(liabilities["mortgage"], [])


if __name__ == "__main__":
    unittest.main()
