"""Tool surface exposed to agents."""
