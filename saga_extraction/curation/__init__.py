"""Curation package."""

from saga_extraction.curation.batch_materializer import BatchMaterializer, MaterializationResult
from saga_extraction.curation.review_service import ReviewService

__all__ = ["BatchMaterializer", "MaterializationResult", "ReviewService"]
