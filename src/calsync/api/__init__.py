"""REST API and WebSocket app for calsync."""
