"""Core provider layer for vision model access."""
