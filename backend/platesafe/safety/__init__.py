"""Trust-and-safety core: rate limiting, trust ledger and escalation."""
