"""Domain building blocks: aggregate ledger, domain events, dispatch."""
