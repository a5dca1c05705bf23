"""Event bus, worker pool and dispatcher for inbound support events."""
