"""Fleet orchestration: up, down and is-up."""
