"""HealthGrant: patient consent grants, capability tokens and a notification queue."""

__version__ = "1.0.0"
