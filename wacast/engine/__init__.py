"""Send loop, campaign recorder, snapshots and analytics."""
