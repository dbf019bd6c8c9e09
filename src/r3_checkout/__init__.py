"""R3 checkout backend: sessions, payment intents and webhook reconciliation."""

__version__ = "1.0.0"
