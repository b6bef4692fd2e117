from __future__ import annotations

from saga_extraction.normalization.slugs import first_available_slug, slugify


def test_slugify_folds_accents_and_punctuation() -> None:
    assert slugify("Daenerys Targaryen") == "daenerys-targaryen"
    assert slugify("Jaqen H'ghar") == "jaqen-h-ghar"
    assert slugify("Éowyn of Rohan!") == "eowyn-of-rohan"


def test_slugify_never_empty() -> None:
    assert slugify("???") == "entity"


def test_first_available_slug_appends_counter() -> None:
    taken = {"jon-snow", "jon-snow-2"}

    assert first_available_slug("jon-snow", taken.__contains__) == "jon-snow-3"
    assert first_available_slug("arya-stark", taken.__contains__) == "arya-stark"
