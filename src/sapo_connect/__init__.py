"""SAPO Connect: OAuth 1.0a login with clock-skew pre-check."""

__version__ = "0.1.0"
