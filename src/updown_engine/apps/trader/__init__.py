"""Decision-and-execution engine for 15-minute Up/Down markets.

Hold the exposure ledger, the rate-limited order execution client, the
per-market mispricing strategy with its kill switch, and the runner that
feeds them typed events from a single channel.
"""
