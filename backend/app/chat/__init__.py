"""Real-time chat module: presence, rooms, relay and connection lifecycle."""
