"""Testing fixtures and utilities for the rendezvous package."""
