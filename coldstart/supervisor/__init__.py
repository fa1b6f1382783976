"""Backend lifecycle supervisor: state machine, readiness, idle reaping, and log capture."""
