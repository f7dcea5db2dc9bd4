"""
Error taxonomy for the settlement core.

Validation and not-found errors are surfaced to the caller immediately.
Upstream errors are transient: the settlement poller retries them on its
next tick until the watch window closes.
"""


class ExchangeError(Exception):
    """Base class for all settlement core errors."""


class ConfigurationError(ExchangeError):
    """Required configuration is missing or invalid."""


class ValidationError(ExchangeError):
    """Malformed or out-of-policy input. Never retried."""

    def __init__(self, rule: str, message: str):
        self.rule = rule
        self.message = message
        super().__init__(f"{rule}: {message}")


class NotFoundError(ExchangeError):
    """A requested entity does not exist."""

    def __init__(self, entity: str, key: str):
        self.entity = entity
        self.key = key
        super().__init__(f"{entity} not found: {key}")


class UpstreamError(ExchangeError):
    """Transient failure of the price or explorer API."""

    def __init__(self, service: str, message: str, status_code: int | None = None):
        self.service = service
        self.message = message
        self.status_code = status_code
        detail = f" (HTTP {status_code})" if status_code is not None else ""
        super().__init__(f"{service} error{detail}: {message}")


class PriceUnavailableError(UpstreamError):
    """No price could be resolved for a symbol from any tier."""

    def __init__(self, symbols: list[str]):
        self.symbols = symbols
        super().__init__("price_oracle", f"no price available for {', '.join(symbols)}")


class KeyGenerationError(ExchangeError):
    """Key pair generation or address derivation failed."""


class KeyDecryptionError(ExchangeError):
    """Stored key material failed authentication on decrypt."""


class PersistenceError(ExchangeError):
    """The store rejected a write or could not be reached."""


class InvalidTransitionError(ExchangeError):
    """A status change would move a request backwards or out of a terminal state."""

    def __init__(self, request_id: str, current: str, target: str):
        self.request_id = request_id
        self.current = current
        self.target = target
        super().__init__(f"request {request_id}: cannot move from {current} to {target}")
