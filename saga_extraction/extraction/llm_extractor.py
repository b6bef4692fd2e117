"""LLM-powered entity extraction for one chunk at a time.

This module provides a provider-agnostic interface over OpenAI and Anthropic
chat APIs. Prompts are rendered from YAML templates and responses are parsed
into ``CandidateDraft`` objects. Provider and parse failures never escape
``ExtractionClient.extract``; they are returned on the ``ChunkExtraction``.
"""

from __future__ import annotations

import json
import math
import re
import time
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple

import anthropic
import openai
import yaml
from loguru import logger

from saga_extraction.errors import ChunkFailure, MalformedResponseError, ProviderError, ValidationError
from saga_extraction.extraction.models import (
    CandidateDraft,
    ChunkExtraction,
    ProviderReply,
    TokenUsage,
)
from saga_extraction.ingestion.chunker import Chunk
from saga_extraction.storage.schemas import CandidateAttributes, EntityType
from saga_extraction.utils.config import SUPPORTED_PROVIDERS, ExtractionConfig, PricingConfig
from saga_extraction.utils.llm_client import create_provider_client

PROMPT_KEY = "entity_extraction"
TRANSIENT_STATUS_CODES = frozenset({408, 409, 429})

DEFAULT_PROMPTS_PATH = Path(__file__).with_name("prompts.yaml")


class ExtractionClient:
    """LLM extractor with provider switch, retries, usage accounting, and structured parsing.

    Example:
        >>> client = ExtractionClient(config.extraction, config.pricing)
        >>> result = client.extract(chunk, provider="openai", model="gpt-4.1-mini")
        >>> result.ok, len(result.candidates), result.cost_usd
    """

    def __init__(
        self,
        config: Optional[ExtractionConfig] = None,
        pricing: Optional[PricingConfig] = None,
        *,
        prompts_path: str | Path | None = None,
        api_keys: Mapping[str, str | None] | None = None,
        sleep_fn: Callable[[float], None] | None = None,
        openai_client: Any = None,
        anthropic_client: Any = None,
    ) -> None:
        self.config = config or ExtractionConfig()
        self.pricing = pricing or PricingConfig()
        self.prompts_path = Path(prompts_path or self.config.prompts_path or DEFAULT_PROMPTS_PATH)
        self.prompts = self._load_prompts(self.prompts_path)
        self._api_keys = dict(api_keys or {})
        self._sleep = sleep_fn or time.sleep
        self._openai_client = openai_client
        self._anthropic_client = anthropic_client

        logger.info(
            "Initialized ExtractionClient",
            provider=self.config.llm.provider,
            model=self.config.llm.model,
            prompts=str(self.prompts_path),
        )

    # -----------------------
    # Public API
    # -----------------------
    def extract(
        self,
        chunk: Chunk,
        *,
        provider: Optional[str] = None,
        model: Optional[str] = None,
    ) -> ChunkExtraction:
        """Extract candidate drafts from one chunk.

        Args:
            chunk: Chunk with its absolute start offset in the source text
            provider: ``openai`` or ``anthropic`` (defaults to the configured provider)
            model: Provider model name (defaults to the configured model)

        Returns:
            ChunkExtraction with candidates, accumulated usage and cost, and the
            chunk failure if retries were exhausted

        Raises:
            ValidationError: If the provider is not supported
        """
        provider = provider or self.config.llm.provider
        if provider not in SUPPORTED_PROVIDERS:
            raise ValidationError(f"Unsupported LLM provider: {provider}")
        model = model or self.config.llm.model

        system, user = self._render_prompt(chunk.content)
        max_attempts = max(1, self.config.llm.retry_attempts)

        usage = TokenUsage()
        attempts = 0
        transient_failures = 0
        malformed_failures = 0

        logger.debug(f"Extracting chunk {chunk.index} using {provider}: {model}")

        while True:
            attempts += 1
            try:
                reply = self._call_provider(provider, system=system, user=user, model=model)
            except ProviderError as exc:
                if exc.transient and transient_failures < max_attempts - 1:
                    transient_failures += 1
                    backoff = self._backoff(transient_failures)
                    logger.warning(
                        "LLM request failed",
                        chunk=chunk.index,
                        attempt=attempts,
                        max_attempts=max_attempts,
                        backoff=backoff,
                        error=str(exc),
                    )
                    self._sleep(backoff)
                    continue
                return self._failed(chunk, model, usage, attempts, exc)

            usage = usage + reply.usage
            try:
                drafts = self._parse_entities_response(reply.text, chunk)
            except MalformedResponseError as exc:
                if malformed_failures < self.config.llm.malformed_retries:
                    malformed_failures += 1
                    logger.warning(
                        "Malformed LLM response, retrying",
                        chunk=chunk.index,
                        attempt=attempts,
                        error=str(exc),
                    )
                    continue
                return self._failed(chunk, model, usage, attempts, exc)

            cost = self.pricing.cost_for(model, usage.prompt_tokens, usage.completion_tokens)
            logger.debug(
                "Chunk {} yielded {} candidates ({} tokens, ${})",
                chunk.index,
                len(drafts),
                usage.total_tokens,
                cost,
            )
            return ChunkExtraction(
                chunk_index=chunk.index,
                candidates=drafts,
                usage=usage,
                cost_usd=cost,
                attempts=attempts,
            )

    # -----------------------
    # Prompt handling
    # -----------------------
    def _load_prompts(self, path: Path) -> Dict[str, Any]:
        if not path.exists():
            raise FileNotFoundError(f"Extraction prompt template not found: {path}")
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
        if not isinstance(data, dict):
            raise ValueError(f"Prompt template root must be a mapping/dict: {path}")
        if PROMPT_KEY not in data:
            raise KeyError(f"Prompt key not found in template: {PROMPT_KEY}")
        return data

    def _render_prompt(self, chunk_text: str) -> Tuple[str, str]:
        prompt = self.prompts.get(PROMPT_KEY) or {}
        system = str(prompt.get("system", "")).strip()
        user_template = str(prompt.get("user_template", "{chunk_text}"))
        context = {
            "chunk_text": chunk_text,
            "entity_types": ", ".join(entity_type.value for entity_type in EntityType),
            "max_entities": self.config.max_entities_per_chunk,
        }
        try:
            user = user_template.format(**context)
        except KeyError as exc:
            missing = exc.args[0]
            raise KeyError(f"Missing placeholder '{missing}' in prompt context for '{PROMPT_KEY}'")
        return system, user

    # -----------------------
    # LLM invocation
    # -----------------------
    def _call_provider(self, provider: str, *, system: str, user: str, model: str) -> ProviderReply:
        try:
            if provider == "openai":
                return self._call_openai(system=system, user=user, model=model)
            return self._call_anthropic(system=system, user=user, model=model)
        except ProviderError:
            raise
        except Exception as exc:  # noqa: BLE001
            raise _classify_provider_error(exc) from exc

    def _call_openai(self, *, system: str, user: str, model: str) -> ProviderReply:
        if self._openai_client is None:
            self._openai_client = create_provider_client(
                "openai",
                api_key=self._api_keys.get("openai"),
                base_url=self.config.llm.base_url,
                timeout=self.config.llm.timeout,
            )

        response = self._openai_client.chat.completions.create(
            model=model,
            messages=[
                {"role": "system", "content": system},
                {"role": "user", "content": user},
            ],
            temperature=self.config.llm.temperature,
            max_tokens=self.config.llm.max_tokens,
            response_format={"type": "json_object"},
        )

        content = response.choices[0].message.content
        if isinstance(content, list):
            parts = []
            for item in content:
                if isinstance(item, dict):
                    parts.append(str(item.get("text", "")))
                else:
                    parts.append(str(item))
            text = "\n".join(parts).strip()
        else:
            text = str(content or "")

        usage = getattr(response, "usage", None)
        return ProviderReply(
            text=text,
            usage=TokenUsage(
                prompt_tokens=int(getattr(usage, "prompt_tokens", 0) or 0),
                completion_tokens=int(getattr(usage, "completion_tokens", 0) or 0),
            ),
        )

    def _call_anthropic(self, *, system: str, user: str, model: str) -> ProviderReply:
        if self._anthropic_client is None:
            self._anthropic_client = create_provider_client(
                "anthropic",
                api_key=self._api_keys.get("anthropic"),
                base_url=self.config.llm.base_url,
                timeout=self.config.llm.timeout,
            )

        message = self._anthropic_client.messages.create(
            model=model,
            system=system,
            messages=[{"role": "user", "content": user}],
            max_tokens=self.config.llm.max_tokens,
            temperature=self.config.llm.temperature,
        )
        parts = []
        for block in message.content:
            if getattr(block, "type", None) == "text":
                parts.append(getattr(block, "text", ""))

        usage = getattr(message, "usage", None)
        return ProviderReply(
            text="\n".join(parts).strip(),
            usage=TokenUsage(
                prompt_tokens=int(getattr(usage, "input_tokens", 0) or 0),
                completion_tokens=int(getattr(usage, "output_tokens", 0) or 0),
            ),
        )

    def _backoff(self, failures: int) -> float:
        llm = self.config.llm
        return min(llm.backoff_base_seconds * 2 ** (failures - 1), llm.max_backoff_seconds)

    def _failed(
        self,
        chunk: Chunk,
        model: str,
        usage: TokenUsage,
        attempts: int,
        error: ProviderError,
    ) -> ChunkExtraction:
        failure = ChunkFailure(chunk.index, str(error), transient=error.transient, attempts=attempts)
        logger.error(str(failure))
        return ChunkExtraction(
            chunk_index=chunk.index,
            usage=usage,
            cost_usd=self.pricing.cost_for(model, usage.prompt_tokens, usage.completion_tokens),
            attempts=attempts,
            error=failure,
        )

    # -----------------------
    # Parsing helpers
    # -----------------------
    def _parse_entities_response(self, response_text: str, chunk: Chunk) -> List[CandidateDraft]:
        data = self._extract_json(response_text)
        if data is None:
            raise MalformedResponseError("Response is not valid JSON")

        if isinstance(data, dict) and "entities" in data:
            raw_entities = data.get("entities") or []
        elif isinstance(data, list):
            raw_entities = data
        else:
            raise MalformedResponseError("Unexpected entity response structure")
        if not isinstance(raw_entities, list):
            raise MalformedResponseError("'entities' must be a list")

        drafts: List[CandidateDraft] = []
        skipped = 0
        for item in raw_entities:
            draft = self._parse_entity(item, chunk) if isinstance(item, dict) else None
            if draft is None:
                skipped += 1
                continue
            drafts.append(draft)

        if skipped:
            logger.debug("Skipped {} unusable entities in chunk {}", skipped, chunk.index)
        return self._cap(drafts, chunk)

    def _parse_entity(self, item: Dict[str, Any], chunk: Chunk) -> Optional[CandidateDraft]:
        name = str(
            item.get("canonical_name") or item.get("name") or item.get("entity") or ""
        ).strip()
        entity_type = EntityType.from_label(
            item.get("type") or item.get("entity_type") or item.get("label")
        )
        if not name or entity_type is None:
            return None

        aliases = self._normalize_aliases(
            item.get("alternative_names") or item.get("aliases"), exclude=name
        )
        description = str(item.get("description") or "").strip() or None
        context = str(item.get("context") or item.get("context_snippet") or "").strip()
        context = context[: self.config.context_max_length] or None

        found = re.search(re.escape(name), chunk.content, re.IGNORECASE)
        char_offset = chunk.start + found.start() if found else chunk.start

        return CandidateDraft(
            entity_type=entity_type,
            canonical_name=name,
            alternative_names=aliases,
            description=description,
            attributes=CandidateAttributes.from_raw(
                entity_type,
                item.get("attributes") if isinstance(item.get("attributes"), dict) else None,
                max_extra=self.config.max_extra_attributes,
            ),
            context_snippet=context,
            confidence_score=self._normalize_confidence(item.get("confidence", item.get("score"))),
            chunk_index=chunk.index,
            char_offset=char_offset,
            raw=item,
        )

    def _cap(self, drafts: List[CandidateDraft], chunk: Chunk) -> List[CandidateDraft]:
        limit = self.config.max_entities_per_chunk
        if len(drafts) <= limit:
            return drafts
        keep = sorted(range(len(drafts)), key=lambda i: (-drafts[i].confidence_score, i))[:limit]
        logger.warning(
            "Chunk {} returned {} entities; keeping the {} most confident",
            chunk.index,
            len(drafts),
            limit,
        )
        return [drafts[i] for i in sorted(keep)]

    def _extract_json(self, text: str) -> Any:
        if not text:
            return None

        try:
            return json.loads(text)
        except json.JSONDecodeError:
            pass

        match = re.search(r"(\{.*\}|\[.*\])", text, flags=re.DOTALL)
        if not match:
            return None

        try:
            return json.loads(match.group(1))
        except json.JSONDecodeError:
            return None

    def _normalize_aliases(self, aliases: Any, *, exclude: str) -> List[str]:
        if aliases is None:
            return []
        if isinstance(aliases, str):
            values: Sequence[Any] = [aliases]
        elif isinstance(aliases, Sequence):
            values = aliases
        else:
            return []

        seen = {exclude.casefold()}
        result: List[str] = []
        for alias in values:
            text = str(alias).strip() if alias is not None else ""
            if text and text.casefold() not in seen:
                seen.add(text.casefold())
                result.append(text)
        return result

    def _normalize_confidence(self, value: Any) -> float:
        """Map provider confidence onto 0-100; fractions in (0, 1) are treated as ratios."""
        default = self.config.default_confidence
        if value is None or isinstance(value, bool):
            return default
        try:
            score = float(value)
        except (TypeError, ValueError):
            return default
        if math.isnan(score):
            return default
        if 0.0 < score < 1.0:
            score *= 100
        return round(max(0.0, min(score, 100.0)), 2)


def _classify_provider_error(exc: Exception) -> ProviderError:
    status = getattr(exc, "status_code", None)
    transient = isinstance(
        exc,
        (TimeoutError, ConnectionError, openai.APIConnectionError, anthropic.APIConnectionError),
    ) or (isinstance(status, int) and (status in TRANSIENT_STATUS_CODES or status >= 500))
    return ProviderError(
        f"{type(exc).__name__}: {exc}",
        transient=transient,
        status_code=status if isinstance(status, int) else None,
    )
