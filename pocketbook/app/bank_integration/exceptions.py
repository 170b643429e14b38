"""
Bank integration exceptions.

Every failure the connection subsystem can surface, with typed attributes.
Upstream failures keep the provider's status and raw body so operators can
diagnose them; routes decide whether the body is shown to the client.
"""

from typing import List, Optional


class BankIntegrationError(Exception):
    """Base exception for all bank integration errors."""

    pass


class ConfigMissing(BankIntegrationError):
    """Raised when required provider settings are not configured."""

    def __init__(self, missing: List[str]) -> None:
        self.missing = missing
        super().__init__(f"Missing required env vars: {', '.join(missing)}")


class MissingParameter(BankIntegrationError):
    """Raised when a required request parameter is absent."""

    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"{name} is required")


class InvalidOrExpiredState(BankIntegrationError):
    """Raised when an OAuth state was never issued, already used, or expired."""

    def __init__(self) -> None:
        super().__init__("invalid_or_expired_state")


class UpstreamError(BankIntegrationError):
    """Raised when the provider answers with an error."""

    operation = "KFTC request"

    def __init__(self, status: int, raw_body: str) -> None:
        self.status = status
        self.raw_body = raw_body
        super().__init__(f"{self.operation} failed ({status}): {raw_body}")


class ExchangeError(UpstreamError):
    """Raised when the authorization code exchange fails."""

    operation = "KFTC token exchange"


class RefreshError(UpstreamError):
    """Raised when the refresh grant fails."""

    operation = "KFTC token refresh"


class ProviderError(UpstreamError):
    """Raised when a provider data call fails."""

    def __init__(self, status: int, raw_body: str, operation: str = "KFTC request") -> None:
        self.operation = operation
        super().__init__(status, raw_body)


class ProviderParseError(BankIntegrationError):
    """Raised when a provider response body cannot be parsed."""

    def __init__(self, operation: str, raw_body: str, reason: str) -> None:
        self.operation = operation
        self.raw_body = raw_body
        self.reason = reason
        super().__init__(f"Failed to parse {operation} response: {reason}")


class UserNotFound(BankIntegrationError):
    """Raised when the user record does not exist."""

    def __init__(self, user_id: int) -> None:
        self.user_id = user_id
        super().__init__("user_not_found")


class RefreshTokenMissing(BankIntegrationError):
    """Raised when a refresh is needed but no refresh token is stored."""

    def __init__(self, user_id: int) -> None:
        self.user_id = user_id
        super().__init__("refresh_token_missing")


class RefreshResponseInvalid(BankIntegrationError):
    """Raised when a refresh response carries no access token."""

    def __init__(self, user_id: int) -> None:
        self.user_id = user_id
        super().__init__("refresh_response_missing_access_token")


class ConnectFailed(BankIntegrationError):
    """Raised when connecting a bank fails before any state was persisted."""

    def __init__(self, detail: str, status: Optional[int] = None, raw_body: Optional[str] = None) -> None:
        self.detail = detail
        self.status = status
        self.raw_body = raw_body
        super().__init__(detail)


class UnknownAccount(BankIntegrationError):
    """Raised when a submitted transaction references an account the user does not own."""

    def __init__(self, account_id: int) -> None:
        self.account_id = account_id
        super().__init__(f"Bank account {account_id} not found")
