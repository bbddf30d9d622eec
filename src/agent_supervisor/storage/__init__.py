"""SQLite persistence for the attempt ledger."""
