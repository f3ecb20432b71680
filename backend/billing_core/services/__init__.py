"""Mutating services. Each returns domain events for the caller to dispatch."""
