"""Core resilience layer for diligence-gateway."""
