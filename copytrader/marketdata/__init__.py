from copytrader.marketdata.balance import BalanceClient, UsdcBalanceClient
from copytrader.marketdata.positions import PolymarketDataClient, Position, PositionsClient

__all__ = [
    "BalanceClient",
    "PolymarketDataClient",
    "Position",
    "PositionsClient",
    "UsdcBalanceClient",
]
