"""Pure kernel value objects (clock, workflow definitions)."""
