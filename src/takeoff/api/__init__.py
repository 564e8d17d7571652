"""HTTP API for the quantity engine."""
