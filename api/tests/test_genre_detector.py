from creatorcore.services.genre_detector import (
    GENRE_BRAND,
    confidence_score,
    detect_genre_heuristic,
    parse_artist_from_title,
)


def test_parse_artist_from_common_title_shapes() -> None:
    assert parse_artist_from_title("DJ Nova — Festival Drop") == "DJ Nova"
    assert parse_artist_from_title("Morgan Wallen | Lies Lies Lies TikTok Campaign") == "Morgan Wallen"
    assert parse_artist_from_title('Tyla "Water" Push') == "Tyla"
    assert parse_artist_from_title("Peso Pluma ft. Someone - Track") == "Peso Pluma"
    assert parse_artist_from_title("Mitski") == "Mitski"
    assert parse_artist_from_title("") is None
    assert parse_artist_from_title("   ") is None


def test_exact_artist_match_is_high_confidence() -> None:
    match = detect_genre_heuristic("Drake - New Single")
    assert match is not None
    assert (match.genre, match.confidence) == ("Hip-Hop/Rap", "high")


def test_brand_keywords_win_over_platform_words() -> None:
    match = detect_genre_heuristic("Nike TikTok Campaign")
    assert match is not None
    assert match.genre == GENRE_BRAND
    assert detect_genre_heuristic("TikTok Campaign") is None


def test_title_keywords_without_artist_match() -> None:
    match = detect_genre_heuristic("Summer country road trip")
    assert match is not None
    assert match.genre == "Country"
    assert detect_genre_heuristic("DJ Nova — Festival Drop") is None


def test_confidence_score_mapping() -> None:
    assert confidence_score("high") == 0.9
    assert confidence_score("medium") == 0.7
    assert confidence_score("low") == 0.5
    assert confidence_score(None) == 0.0
