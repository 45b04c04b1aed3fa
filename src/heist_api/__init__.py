"""Heist point-transfer service for the loyalty platform."""
