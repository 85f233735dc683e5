"""Carrier integration: API clients, resilience policy and status mapping."""
