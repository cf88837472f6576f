"""Wire encodings and client transports for agent sessions."""
