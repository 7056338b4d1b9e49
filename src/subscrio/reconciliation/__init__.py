"""Payment provider webhook reconciliation."""
