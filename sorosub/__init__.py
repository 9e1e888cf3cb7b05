"""SoroSub: recurring payments with a credit-scored BNPL fallback."""

__version__ = "0.1.0"
