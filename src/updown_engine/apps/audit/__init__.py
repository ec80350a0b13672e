"""Write-only audit trail for order attempts, claims and strategy events."""
