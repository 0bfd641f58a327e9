"""Broker services."""
