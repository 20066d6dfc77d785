"""Small, dependency-free helpers shared across sapo-connect."""
