"""Live chain-data sync core for a JAM network explorer."""

__version__ = "0.1.0"
