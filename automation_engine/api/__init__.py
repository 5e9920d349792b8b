"""HTTP API for the automation engine."""
