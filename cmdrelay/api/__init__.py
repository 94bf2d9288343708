"""HTTP surface of the relay: producer, executor and internal reaper routes under /api/v1."""
