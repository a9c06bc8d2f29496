from dataclasses import dataclass, field
from typing import Any


class RelayerException(Exception):
    pass


@dataclass
class NetworkError(RelayerException):
    endpoint: str | None
    message: str

    def __str__(self) -> str:
        return f"network error ({self.endpoint}): {self.message}"


@dataclass
class RpcError(RelayerException):
    endpoint: str | None
    message: str
    error: dict[str, Any] | None = None
    http_status: int | None = None

    def __str__(self) -> str:
        return self.message


@dataclass
class EncodingError(RelayerException):
    function: str
    message: str

    def __str__(self) -> str:
        return f"failed to encode {self.function}: {self.message}"


@dataclass
class DecodingError(RelayerException):
    function: str
    message: str

    def __str__(self) -> str:
        return f"failed to decode {self.function}: {self.message}"


@dataclass
class AccountResolutionError(RelayerException):
    factory: str
    reasons: list[str] = field(default_factory=list)

    def __str__(self) -> str:
        return (
            f"Factory {self.factory} reverted for both signatures "
            f"(string/bytes32): {'; '.join(self.reasons)}"
        )


@dataclass
class BundlerRejectionError(RelayerException):
    error: dict[str, Any]
    user_operation: dict[str, str]

    def __str__(self) -> str:
        return f"Bundler rejected: {self.error.get('message', self.error)}"


@dataclass
class TransactionError(RelayerException):
    transaction_hash: str | None
    message: str

    def __str__(self) -> str:
        if self.transaction_hash is None:
            return self.message
        return f"{self.message} - transaction: {self.transaction_hash}"


@dataclass
class ConfigurationError(RelayerException):
    message: str

    def __str__(self) -> str:
        return self.message


@dataclass
class InvalidRequestError(RelayerException):
    message: str

    def __str__(self) -> str:
        return self.message
