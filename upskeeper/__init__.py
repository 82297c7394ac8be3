"""upskeeper: a long-running UPS monitoring agent built on Network UPS Tools."""

__version__ = "0.1.0"
