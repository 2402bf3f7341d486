"""Audio capture subsystem."""
