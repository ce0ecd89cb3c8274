"""Transport clients: REST gateway and WebSocket stream manager."""
