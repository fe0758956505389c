from copytrader.persistence.trade_store import FirestoreTradeStore, TradeStore

__all__ = ["FirestoreTradeStore", "TradeStore"]
