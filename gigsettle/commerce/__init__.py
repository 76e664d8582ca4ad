"""Commerce layer of gigsettle.

Subpackages:
- jobs: job postings, bids, bid acceptance and trades
- milestones: milestone state machine and release
- ledger: earnings, balances and withdrawals
- escrow: release descriptors for the on-chain escrow contract

Modules:
- reconciler: scheduled auto-release sweep
- notifications: best-effort notification dispatch
- engine: SettlementEngine wiring the services to one store
"""
