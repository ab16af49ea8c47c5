"""Source entity and target record models."""
