"""querypilot: tool-calling conversation engine for data assistants."""

__version__ = "0.1.0"
