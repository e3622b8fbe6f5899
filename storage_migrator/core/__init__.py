"""Core services: configuration, logging, persistence and run control."""
