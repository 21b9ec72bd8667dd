"""Local stand-ins for external systems."""
