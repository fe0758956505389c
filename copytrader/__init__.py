"""
copytrader package

Background worker that mirrors the trades of tracked wallets. Raw trade activity is
read from Firestore, coalesced per (wallet, market, asset, side) over a fixed window,
and ready aggregates are turned into exactly one outbound order each.
"""
