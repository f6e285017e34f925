"""fleet-compliance-engine: policy compliance auditing for a GitHub organization."""

__version__ = "0.1.0"
