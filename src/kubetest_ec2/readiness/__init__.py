"""Per-instance readiness gates and the poller that drives them."""
