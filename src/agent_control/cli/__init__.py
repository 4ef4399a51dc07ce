"""agent-control CLI."""
