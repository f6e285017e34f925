"""Core: ORM models, interfaces, and the pipeline services."""
