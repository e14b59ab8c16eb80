"""Example merge targets."""
