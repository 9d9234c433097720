"""SignTrail: document signing with a verifiable, hash-anchored audit trail."""

__version__ = "0.1.0"
