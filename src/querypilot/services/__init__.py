"""Service layer helpers (settings, history persistence, telemetry)."""
