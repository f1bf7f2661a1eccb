"""Transaction signing proxy for HSM-held keys."""

__version__ = "0.1.0"
