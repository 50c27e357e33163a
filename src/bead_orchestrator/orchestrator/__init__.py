"""Work/Task lifecycle: persistence, services and the per-work runner."""
