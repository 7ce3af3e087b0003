"""ViewForge: staged, user-approved generation of five coordinated product views."""

__version__ = "1.0.0"
