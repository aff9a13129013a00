"""Adapters binding the care dispatch core to concrete collaborators."""
