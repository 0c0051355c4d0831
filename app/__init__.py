"""Application wiring: network registry and service container."""
