"""Portfolio-decision and workflow-coordination engine for AI trading analyses."""

__version__ = "0.1.0"
