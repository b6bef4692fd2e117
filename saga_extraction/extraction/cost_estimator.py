"""Pre-flight chunk, token, cost, and duration estimates for an extraction job."""

from decimal import ROUND_HALF_UP, Decimal
from typing import Optional

from loguru import logger

from saga_extraction.ingestion.chunker import TextChunker
from saga_extraction.storage.schemas import CostEstimate
from saga_extraction.utils.config import PricingConfig


class CostEstimator:
    """Estimate what a job will cost before any provider call is made.

    Each chunk is charged its own characters at ``chars_per_token`` plus a fixed
    prompt overhead and response allowance. The token total is priced as an
    input/output split at the model's per-1K rates.
    """

    def __init__(
        self,
        pricing: Optional[PricingConfig] = None,
        chunker: Optional[TextChunker] = None,
    ) -> None:
        self.pricing = pricing or PricingConfig()
        self.chunker = chunker or TextChunker()

    def estimate(
        self,
        text: str,
        chunk_size: Optional[int] = None,
        *,
        provider: str = "openai",
        model: Optional[str] = None,
    ) -> CostEstimate:
        chunks = self.chunker.split(text, chunk_size)
        pricing = self.pricing

        tokens = sum(
            len(chunk) // pricing.chars_per_token
            + pricing.prompt_overhead_tokens
            + pricing.response_allowance_tokens
            for chunk in chunks
        )

        rate = pricing.rate_for(model)
        thousands = Decimal(tokens) / 1000
        input_share = Decimal(str(pricing.input_token_share))
        cost = thousands * input_share * rate.input_rate() + thousands * (
            1 - input_share
        ) * rate.output_rate()

        estimate = CostEstimate(
            chunks=len(chunks),
            tokens=tokens,
            cost_usd=cost.quantize(Decimal("0.0001"), rounding=ROUND_HALF_UP),
            estimated_entities=len(chunks) * pricing.entities_per_chunk,
            processing_time_seconds=len(chunks) * pricing.seconds_per_chunk,
            provider=provider,
            model=model or "",
        )
        logger.debug(
            "Estimated {} chunks, {} tokens, ${} for model {}",
            estimate.chunks,
            estimate.tokens,
            estimate.cost_usd,
            model,
        )
        return estimate
