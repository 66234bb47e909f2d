"""Transactional outbox: rows staged with the state change, relayed later."""
