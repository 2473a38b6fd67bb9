import json

from creatorcore.core.config import DEFAULT_CREATORCORE_BASE_URL
from creatorcore.services.sources import LEGACY_SOURCE_KEY, normalize_source_key, parse_agency_sources


def test_parse_agency_sources_falls_back_to_legacy_source() -> None:
    for raw in (None, "", "not-json", '{"key": "x"}', "[]"):
        sources = parse_agency_sources(raw)
        assert [source.key for source in sources] == [LEGACY_SOURCE_KEY]
        assert sources[0].base_url == DEFAULT_CREATORCORE_BASE_URL


def test_parse_agency_sources_normalizes_keys_names_and_urls() -> None:
    raw = json.dumps(
        [
            {"key": " Agency A ", "baseUrl": "https://a.test/api/1.1/obj/"},
            {"key": "agency-b", "name": "Bravo Talent", "base_url": "https://b.test/obj"},
            {"key": "AGENCY-A", "name": "duplicate"},
            {"key": "!!!"},
            {"name": "missing key"},
            "not-an-object",
        ]
    )
    sources = parse_agency_sources(raw, default_base_url="https://fallback.test/obj")

    assert [source.key for source in sources] == ["agency-a", "agency-b"]
    assert sources[0].name == "Agency A"
    assert sources[0].base_url == "https://a.test/api/1.1/obj"
    assert sources[1].name == "Bravo Talent"
    assert sources[1].base_url == "https://b.test/obj"


def test_normalize_source_key_truncates_to_sixty_four_chars() -> None:
    assert normalize_source_key("x" * 100) == "x" * 64
    assert normalize_source_key("Foo Bar__Baz") == "foo-bar__baz"
