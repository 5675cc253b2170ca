"""Chat Drive Relay backend."""
