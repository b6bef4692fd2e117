from __future__ import annotations

import json
from decimal import Decimal
from pathlib import Path
from types import SimpleNamespace
from typing import Any, Dict, List

import pytest

from saga_extraction.errors import ProviderError, ValidationError
from saga_extraction.extraction.llm_extractor import (
    DEFAULT_PROMPTS_PATH,
    PROMPT_KEY,
    ExtractionClient,
    _classify_provider_error,
)
from saga_extraction.extraction.models import ProviderReply, TokenUsage
from saga_extraction.ingestion.chunker import Chunk
from saga_extraction.storage.schemas import EntityType
from saga_extraction.utils.config import ExtractionConfig, LLMConfig

CHUNK = Chunk(
    index=2,
    start=1000,
    content="Jon Snow, the Lord Commander, walked the Wall at Castle Black with Ghost.",
)


def _noop_sleep(_: float) -> None:
    return None


def _client(sleeps: List[float] | None = None, **llm: Any) -> ExtractionClient:
    config = ExtractionConfig(llm=LLMConfig(**{"retry_attempts": 3, "model": "gpt-4", **llm}))
    return ExtractionClient(
        config,
        sleep_fn=sleeps.append if sleeps is not None else _noop_sleep,
    )


def _reply(entities: List[Dict[str, Any]], prompt: int = 1000, completion: int = 500) -> ProviderReply:
    return ProviderReply(
        text=json.dumps({"entities": entities}),
        usage=TokenUsage(prompt_tokens=prompt, completion_tokens=completion),
    )


JON = {
    "type": "character",
    "canonical_name": "Jon Snow",
    "alternative_names": ["Lord Snow", "jon snow", "Lord Snow", ""],
    "description": "Lord Commander of the Night's Watch",
    "attributes": {"title": "Lord Commander", "Sword": "Longclaw"},
    "confidence": 0.88,
    "context": "Jon Snow, the Lord Commander, walked the Wall",
}


def test_parses_entity_response(monkeypatch: pytest.MonkeyPatch) -> None:
    client = _client()
    calls: Dict[str, str] = {}

    def fake_openai(*, system: str, user: str, model: str) -> ProviderReply:
        calls.update(system=system, user=user, model=model)
        return _reply([JON, {"type": "place", "name": "Castle Black", "confidence": 95}])

    monkeypatch.setattr(client, "_call_openai", fake_openai)

    result = client.extract(CHUNK, provider="openai", model="gpt-4")

    assert result.ok
    assert result.attempts == 1
    assert [c.canonical_name for c in result.candidates] == ["Jon Snow", "Castle Black"]
    jon = result.candidates[0]
    assert jon.entity_type is EntityType.PERSON
    assert jon.alternative_names == ["Lord Snow"]
    assert jon.confidence_score == pytest.approx(88.0)
    assert jon.chunk_index == 2
    assert jon.char_offset == 1000
    assert jon.attributes.known["title"].value == "Lord Commander"
    assert jon.attributes.extra == {"sword": "Longclaw"}
    assert result.candidates[1].char_offset == 1000 + CHUNK.content.index("Castle Black")
    assert result.usage.total_tokens == 1500
    assert result.cost_usd == Decimal("0.06")
    assert CHUNK.content in calls["user"]
    assert calls["model"] == "gpt-4"


def test_unusable_entities_are_skipped(monkeypatch: pytest.MonkeyPatch) -> None:
    client = _client()
    monkeypatch.setattr(
        client,
        "_call_openai",
        lambda **_: _reply(
            [{"type": "spaceship", "name": "Millennium Falcon"}, {"type": "person"}, "Ghost", JON]
        ),
    )

    result = client.extract(CHUNK, provider="openai")

    assert [c.canonical_name for c in result.candidates] == ["Jon Snow"]


def test_name_not_in_chunk_uses_chunk_start(monkeypatch: pytest.MonkeyPatch) -> None:
    client = _client()
    monkeypatch.setattr(
        client, "_call_openai", lambda **_: _reply([{"type": "person", "name": "Samwell Tarly"}])
    )

    result = client.extract(CHUNK, provider="openai")

    assert result.candidates[0].char_offset == CHUNK.start
    assert result.candidates[0].confidence_score == 70.0


def test_offset_counts_characters_of_original_text(monkeypatch: pytest.MonkeyPatch) -> None:
    # "İ".lower() is two code points long
    chunk = Chunk(index=0, start=0, content="İİİİİİİİİİ Jon rode north.")
    client = _client()
    monkeypatch.setattr(client, "_call_openai", lambda **_: _reply([{"type": "person", "name": "jon"}]))

    result = client.extract(chunk, provider="openai")

    assert result.candidates[0].char_offset == 11
    assert chunk.content[11:14] == "Jon"


def test_packaged_prompts_load_from_any_directory(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.chdir(tmp_path)

    client = ExtractionClient(ExtractionConfig())

    assert client.prompts_path == DEFAULT_PROMPTS_PATH
    assert client.prompts_path.is_file()
    assert "{chunk_text}" in client.prompts[PROMPT_KEY]["user_template"]


def test_transient_errors_are_retried_with_backoff(monkeypatch: pytest.MonkeyPatch) -> None:
    sleeps: List[float] = []
    client = _client(sleeps)
    replies = iter(
        [
            ProviderError("rate limited", transient=True, status_code=429),
            ProviderError("server error", transient=True, status_code=503),
            _reply([JON]),
        ]
    )

    def fake_openai(**_: Any) -> ProviderReply:
        item = next(replies)
        if isinstance(item, Exception):
            raise item
        return item

    monkeypatch.setattr(client, "_call_openai", fake_openai)

    result = client.extract(CHUNK, provider="openai")

    assert result.ok
    assert result.attempts == 3
    assert sleeps == [1.0, 2.0]


def test_transient_errors_exhaust_retry_budget(monkeypatch: pytest.MonkeyPatch) -> None:
    client = _client()
    calls = {"count": 0}

    def always_timeout(**_: Any) -> ProviderReply:
        calls["count"] += 1
        raise TimeoutError("provider timed out")

    monkeypatch.setattr(client, "_call_openai", always_timeout)

    result = client.extract(CHUNK, provider="openai")

    assert not result.ok
    assert calls["count"] == 3
    assert result.attempts == 3
    assert result.error.transient is True
    assert result.error.chunk_index == 2
    assert result.candidates == []


def test_permanent_errors_are_not_retried(monkeypatch: pytest.MonkeyPatch) -> None:
    client = _client()
    calls = {"count": 0}

    def bad_request(**_: Any) -> ProviderReply:
        calls["count"] += 1
        raise ValueError("invalid model")

    monkeypatch.setattr(client, "_call_openai", bad_request)

    result = client.extract(CHUNK, provider="openai")

    assert not result.ok
    assert calls["count"] == 1
    assert result.error.transient is False


def test_malformed_response_retried_once(monkeypatch: pytest.MonkeyPatch) -> None:
    client = _client()
    replies = iter(
        [
            ProviderReply(text="Sorry, I cannot help", usage=TokenUsage(prompt_tokens=800, completion_tokens=10)),
            _reply([JON], prompt=800, completion=200),
        ]
    )
    monkeypatch.setattr(client, "_call_openai", lambda **_: next(replies))

    result = client.extract(CHUNK, provider="openai")

    assert result.ok
    assert result.attempts == 2
    assert result.usage == TokenUsage(prompt_tokens=1600, completion_tokens=210)


def test_repeated_malformed_response_fails_chunk_with_usage(monkeypatch: pytest.MonkeyPatch) -> None:
    client = _client()
    monkeypatch.setattr(
        client,
        "_call_openai",
        lambda **_: ProviderReply(
            text='{"people": []}', usage=TokenUsage(prompt_tokens=1000, completion_tokens=0)
        ),
    )

    result = client.extract(CHUNK, provider="openai")

    assert not result.ok
    assert result.attempts == 2
    assert result.usage.prompt_tokens == 2000
    assert result.cost_usd == Decimal("0.06")
    assert "Unexpected entity response structure" in result.error.reason


def test_json_embedded_in_prose_is_recovered(monkeypatch: pytest.MonkeyPatch) -> None:
    client = _client()
    monkeypatch.setattr(
        client,
        "_call_openai",
        lambda **_: ProviderReply(text="Here you go:\n" + json.dumps({"entities": [JON]}) + "\nDone."),
    )

    result = client.extract(CHUNK, provider="openai")

    assert [c.canonical_name for c in result.candidates] == ["Jon Snow"]


def test_entity_cap_keeps_most_confident_in_order(monkeypatch: pytest.MonkeyPatch) -> None:
    config = ExtractionConfig(llm=LLMConfig(model="gpt-4"), max_entities_per_chunk=2)
    client = ExtractionClient(config, sleep_fn=_noop_sleep)
    entities = [
        {"type": "person", "name": "A", "confidence": 50},
        {"type": "person", "name": "B", "confidence": 90},
        {"type": "person", "name": "C", "confidence": 70},
    ]
    monkeypatch.setattr(client, "_call_openai", lambda **_: _reply(entities))

    result = client.extract(CHUNK, provider="openai")

    assert [c.canonical_name for c in result.candidates] == ["B", "C"]


def test_unsupported_provider_raises() -> None:
    with pytest.raises(ValidationError):
        _client().extract(CHUNK, provider="mistral")


def test_openai_sdk_call_shape() -> None:
    captured: Dict[str, Any] = {}

    def create(**kwargs: Any) -> Any:
        captured.update(kwargs)
        return SimpleNamespace(
            choices=[SimpleNamespace(message=SimpleNamespace(content=json.dumps({"entities": [JON]})))],
            usage=SimpleNamespace(prompt_tokens=300, completion_tokens=100),
        )

    fake = SimpleNamespace(chat=SimpleNamespace(completions=SimpleNamespace(create=create)))
    client = ExtractionClient(
        ExtractionConfig(llm=LLMConfig(model="gpt-4")), sleep_fn=_noop_sleep, openai_client=fake
    )

    result = client.extract(CHUNK, provider="openai", model="gpt-4o")

    assert captured["model"] == "gpt-4o"
    assert captured["response_format"] == {"type": "json_object"}
    assert captured["messages"][0]["role"] == "system"
    assert result.usage == TokenUsage(prompt_tokens=300, completion_tokens=100)


def test_anthropic_sdk_call_shape() -> None:
    captured: Dict[str, Any] = {}

    def create(**kwargs: Any) -> Any:
        captured.update(kwargs)
        return SimpleNamespace(
            content=[SimpleNamespace(type="text", text=json.dumps({"entities": [JON]}))],
            usage=SimpleNamespace(input_tokens=400, output_tokens=120),
        )

    fake = SimpleNamespace(messages=SimpleNamespace(create=create))
    client = ExtractionClient(sleep_fn=_noop_sleep, anthropic_client=fake)

    result = client.extract(CHUNK, provider="anthropic", model="claude-3-5-sonnet-20241022")

    assert captured["model"] == "claude-3-5-sonnet-20241022"
    assert "Lord Commander" in captured["messages"][0]["content"]
    assert result.candidates[0].canonical_name == "Jon Snow"
    assert result.usage.total_tokens == 520


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        (None, 70.0),
        (True, 70.0),
        ("high", 70.0),
        (float("nan"), 70.0),
        (0.42, 42.0),
        ("85", 85.0),
        (150, 100.0),
        (-3, 0.0),
    ],
)
def test_confidence_normalization(raw: Any, expected: float) -> None:
    assert _client()._normalize_confidence(raw) == expected


def test_classify_provider_error_by_status() -> None:
    throttled = RuntimeError("slow down")
    throttled.status_code = 429
    bad = RuntimeError("bad request")
    bad.status_code = 400

    assert _classify_provider_error(throttled).transient is True
    assert _classify_provider_error(bad).transient is False
    assert _classify_provider_error(ConnectionError("reset")).transient is True
