"""Reference routes."""
