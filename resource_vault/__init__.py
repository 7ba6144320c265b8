"""Resource Vault - versioned storage for clinical resources."""

__version__ = "1.0.0"
