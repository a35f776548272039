"""HTTP control plane: receives events, starts runs, serves their state."""
