"""Automated on-chain redemption of settled Polymarket positions.

Poll redeemable positions for the proxy wallet and the signer, submit
``redeemPositions`` transactions in small batches, and retry transient
failures with linear backoff.
"""
