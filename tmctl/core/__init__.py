"""Core deployment logic for tmctl."""
