"""Remediation queue and stage orchestration for failed CI builds."""

__version__ = "0.1.0"
