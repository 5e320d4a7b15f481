"""
Core interfaces for external collaborators of the pipeline.
"""

from .enrichment import EnrichmentClient

__all__ = ["EnrichmentClient"]
