from __future__ import annotations


class CopyTraderError(RuntimeError):
    """Base class for errors raised by the copytrader worker."""


class ConfigError(CopyTraderError):
    """
    Invalid or missing configuration.

    Fatal at startup; never retried.
    """


class TradeEventError(CopyTraderError, ValueError):
    """
    A stored activity record cannot be turned into a TradeEvent.

    Raised for missing required fields, non-numeric sizes/prices and unknown sides.
    """

    def __init__(self, message: str, *, trade_id: str | None = None) -> None:
        super().__init__(message)
        self.trade_id = trade_id


class RemoteCallError(CopyTraderError):
    """
    A remote dependency (store, market data, balance, order service) failed or timed out.
    """

    def __init__(self, operation: str, cause: BaseException | None = None) -> None:
        detail = f"{type(cause).__name__}: {cause}" if cause is not None else "failed"
        super().__init__(f"{operation} {detail}")
        self.operation = operation
        self.cause = cause


class SecretError(CopyTraderError):
    pass
