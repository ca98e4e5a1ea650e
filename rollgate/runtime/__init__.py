"""Runtime wiring: configuration loading and service construction."""
