from __future__ import annotations

from dataclasses import dataclass, field
import json
from typing import Any, Mapping, Protocol
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen

PLAID_ENV_HOSTS = {
    "sandbox": "https://sandbox.plaid.com",
    "development": "https://development.plaid.com",
    "production": "https://production.plaid.com",
}
LIABILITY_KINDS = ("credit", "student", "mortgage")
PLAID_ERROR_MESSAGES = {
    "ITEM_LOGIN_REQUIRED": "Your bank connection needs to be refreshed. Please re-authenticate.",
    "PRODUCTS_NOT_SUPPORTED": "This feature is not supported by your bank.",
    "INVALID_ACCESS_TOKEN": "Bank connection is invalid. Please reconnect your account.",
    "INSTITUTION_DOWN": "Your bank is temporarily unavailable. Please try again later.",
    "INSTITUTION_NOT_RESPONDING": "Your bank is not responding. Please try again later.",
    "RATE_LIMIT_EXCEEDED": "Too many requests. Please wait a moment and try again.",
}
DEFAULT_PLAID_ERROR_MESSAGE = "Bank connection error. Please try again."


def empty_liabilities() -> dict[str, list]:
    return {kind: [] for kind in LIABILITY_KINDS}


class LiabilitySourceUnavailable(RuntimeError):
    """Raised when liabilities cannot be fetched from the aggregator."""

    def __init__(self, message: str, error_code: str | None = None) -> None:
        super().__init__(message)
        self.error_code = error_code

    @property
    def login_required(self) -> bool:
        return self.error_code == "ITEM_LOGIN_REQUIRED"

    @property
    def user_message(self) -> str:
        return PLAID_ERROR_MESSAGES.get(self.error_code or "", DEFAULT_PLAID_ERROR_MESSAGE)


class LiabilitySource(Protocol):
    def get_liabilities(self, access_token: str | None) -> Mapping[str, Any]:
        ...


@dataclass(frozen=True)
class StaticLiabilitySource:
    """Serves a fixed liabilities payload, regardless of the access token."""

    liabilities: Mapping[str, Any] = None

    def __post_init__(self) -> None:
        payload = empty_liabilities()
        payload.update(self.liabilities or {})
        object.__setattr__(self, "liabilities", payload)

    def get_liabilities(self, access_token: str | None) -> Mapping[str, Any]:
        return {kind: list(items) for kind, items in self.liabilities.items()}


@dataclass
class PlaidLiabilitySource:
    client_id: str | None = None
    secret: str | None = None
    environment: str = "sandbox"
    timeout_seconds: int = 10
    _hosts: Mapping[str, str] = field(default_factory=lambda: dict(PLAID_ENV_HOSTS))

    @property
    def base_url(self) -> str:
        try:
            return self._hosts[self.environment.strip().lower()]
        except KeyError as exc:
            raise ValueError(f"Unsupported Plaid environment: {self.environment}") from exc

    def get_liabilities(self, access_token: str | None) -> Mapping[str, Any]:
        if not access_token:
            return empty_liabilities()
        if not self.client_id or not self.secret:
            raise LiabilitySourceUnavailable("Plaid credentials are not configured")

        payload = self._post(
            "/liabilities/get",
            {
                "client_id": self.client_id,
                "secret": self.secret,
                "access_token": access_token,
            },
        )
        liabilities = payload.get("liabilities")
        if not isinstance(liabilities, dict):
            raise LiabilitySourceUnavailable("Plaid response missing liabilities")

        result = empty_liabilities()
        for kind in LIABILITY_KINDS:
            result[kind] = list(liabilities.get(kind) or [])
        return result

    def _post(self, path: str, body: Mapping[str, Any]) -> Mapping[str, Any]:
        request = Request(
            f"{self.base_url}{path}",
            data=json.dumps(body).encode("utf-8"),
            headers={"Content-Type": "application/json"},
            method="POST",
        )
        try:
            with urlopen(request, timeout=self.timeout_seconds) as response:
                return json.load(response)
        except HTTPError as exc:
            raise LiabilitySourceUnavailable(
                "Plaid liabilities request failed", error_code=_plaid_error_code(exc)
            ) from exc
        except (URLError, TimeoutError, json.JSONDecodeError) as exc:
            raise LiabilitySourceUnavailable("Plaid API unavailable") from exc


@dataclass(frozen=True)
class CompositeLiabilitySource:
    primary: LiabilitySource
    fallback: LiabilitySource

    def get_liabilities(self, access_token: str | None) -> Mapping[str, Any]:
        try:
            return self.primary.get_liabilities(access_token)
        except LiabilitySourceUnavailable:
            return self.fallback.get_liabilities(access_token)


def _plaid_error_code(exc: HTTPError) -> str | None:
    try:
        body = json.loads(exc.read().decode("utf-8"))
    except (ValueError, OSError):
        return None
    if isinstance(body, dict):
        return body.get("error_code")
    return None
