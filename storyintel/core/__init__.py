"""Settings, logging, persistence and shared schemas."""
