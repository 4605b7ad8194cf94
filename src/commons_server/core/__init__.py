"""Core primitives: clock, ids, results, the event bus and the composition root."""
