"""InfraFlow: single-host panel for containers, nginx sites and certificates."""

__version__ = '1.0.0'
