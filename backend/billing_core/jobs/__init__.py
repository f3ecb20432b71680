"""Periodic sweeps and the scheduler that runs them."""
