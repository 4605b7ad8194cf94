"""FastAPI transport: wire events, WebSocket fan-out, health and metrics."""
