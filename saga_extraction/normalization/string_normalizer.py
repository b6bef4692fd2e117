"""String normalization used for duplicate comparison of entity names."""

from __future__ import annotations

import re
import unicodedata
from pathlib import Path
from typing import Dict, Iterable, List, Set

import yaml
from loguru import logger
from pydantic import BaseModel, ConfigDict, Field, field_validator


class NormalizationResult(BaseModel):
    """Result of a normalization call."""

    model_config = ConfigDict(frozen=True)

    original: str
    normalized: str


class NormalizationRules(BaseModel):
    """Normalization rule set, optionally loaded from YAML."""

    model_config = ConfigDict(extra="ignore")

    casefold: bool = True
    unicode_form: str = "NFKC"
    collapse_whitespace: bool = True
    punctuation_replacements: Dict[str, str] = Field(
        default_factory=lambda: {
            "“": '"',
            "”": '"',
            "‘": "'",
            "’": "'",
            "–": "-",
            "\u2014": "-",
            "−": "-",
        }
    )
    strip_characters: List[str] = Field(default_factory=lambda: ["\u200b", "\ufeff"])

    @classmethod
    def from_yaml(cls, rules_file: Path | None) -> NormalizationRules:
        """Load rules from YAML, merging with defaults."""
        base = cls()

        if rules_file is None:
            return base

        if not rules_file.exists():
            raise FileNotFoundError(f"Normalization rules file not found: {rules_file}")

        loaded = yaml.safe_load(rules_file.read_text(encoding="utf-8")) or {}
        if not isinstance(loaded, dict):
            raise ValueError("Normalization rules must be a mapping/dict.")

        defaults = base.model_dump()
        # mapping rules extend the defaults, everything else replaces them
        overrides = {
            key: {**defaults[key], **value}
            if isinstance(defaults[key], dict) and isinstance(value, dict)
            else value
            for key, value in loaded.items()
            if key in defaults
        }

        logger.info(f"Loaded normalization rules from {rules_file}")
        return cls(**{**defaults, **overrides})

    @field_validator("unicode_form")
    @classmethod
    def _validate_unicode_form(cls, value: str) -> str:
        valid_forms = {"NFC", "NFD", "NFKC", "NFKD"}
        upper_value = value.upper()
        if upper_value not in valid_forms:
            raise ValueError(f"Invalid unicode_form '{value}'. Must be one of {valid_forms}.")
        return upper_value


class StringNormalizer:
    """Case-fold, Unicode-normalize, and whitespace-collapse names for comparison."""

    def __init__(
        self,
        rules: NormalizationRules | None = None,
        rules_path: str | Path | None = None,
    ) -> None:
        self.rules = rules or NormalizationRules.from_yaml(Path(rules_path) if rules_path else None)
        self._punctuation_translation = {
            ord(src): dest for src, dest in self.rules.punctuation_replacements.items()
        }
        self._whitespace_re = re.compile(r"\s+")

    def normalize(self, text: str | None) -> NormalizationResult:
        """Normalize a single string."""
        if text is None:
            return NormalizationResult(original="", normalized="")
        return NormalizationResult(original=text, normalized=self.key(text))

    def key(self, text: str | None) -> str:
        """Return the comparison key for a string ("" for blank input)."""
        if not text:
            return ""
        working = unicodedata.normalize(self.rules.unicode_form, text)
        for ch in self.rules.strip_characters:
            working = working.replace(ch, "")
        if self._punctuation_translation:
            working = working.translate(self._punctuation_translation)
        if self.rules.collapse_whitespace:
            working = self._whitespace_re.sub(" ", working)
        working = working.strip()
        if self.rules.casefold:
            working = working.casefold()
        return working

    def key_set(self, values: Iterable[str | None]) -> Set[str]:
        """Comparison keys for several strings, blanks removed."""
        return {key for key in (self.key(value) for value in values) if key}
