"""Error taxonomy shared by the request handlers, scheduled jobs and the relay."""

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from order_relay.core.batch import BatchItemResult


class OrderRelayError(Exception):
    """Base class for all workflow errors."""


class ConfigurationError(OrderRelayError):
    """Required settings are missing for a job or service."""

    def __init__(self, missing: list[str]) -> None:
        self.missing = list(missing)
        super().__init__(f"missing configuration: {', '.join(self.missing)}")


class AuthError(OrderRelayError):
    """The identity provider rejected the client credentials or requested scope."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        self.status_code = status_code
        super().__init__(message)


class TokenUnavailable(OrderRelayError):
    """No token has ever been written to the durable slot."""


class UpstreamAuthUnavailable(OrderRelayError):
    """A request handler could not obtain a token for its downstream call."""


class UpstreamCallFailure(OrderRelayError):
    """A partner call failed at the network level or returned a non-2xx status."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        self.status_code = status_code
        super().__init__(message)


class PreconditionFailure(OrderRelayError):
    """A conditional update found no record to update."""

    def __init__(self, table: str, key: str) -> None:
        self.table = table
        self.key = key
        super().__init__(f"{table} record '{key}' does not exist")


class BatchPartialFailure(OrderRelayError):
    """At least one operation in a fan-out batch failed; successes are kept."""

    def __init__(self, step: str, results: "list[BatchItemResult]") -> None:
        self.step = step
        self.results = list(results)
        self.failed = [result for result in self.results if not result.ok]
        super().__init__(f"{step}: {len(self.failed)} of {len(self.results)} operations failed")


class DeliveryExhausted(OrderRelayError):
    """A relayed event ran out of attempts or exceeded its maximum age."""

    def __init__(self, reason: str, attempts: int, last_error: str | None = None) -> None:
        self.reason = reason
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(f"delivery exhausted ({reason}) after {attempts} attempts")
