from datetime import datetime, timezone

from creatorcore.services.normalize import (
    DEFAULT_TITLE,
    NormalizationContext,
    campaign_slug,
    extract_api_cost_usd,
    normalize_campaign,
    normalize_post,
)


def test_normalize_campaign_requires_upstream_id() -> None:
    assert normalize_campaign({"title": "No id"}, "legacy") is None
    assert normalize_campaign({"_id": "  ", "title": "Blank id"}, "legacy") is None


def test_normalize_campaign_reads_alias_fields() -> None:
    campaign = normalize_campaign(
        {
            "_id": "1700000000000x42",
            "Campaign Title": "  Drake - New Single ",
            "Budget": "2500",
            "Org ID": "org-1",
            "displayPlatforms": ["TikTok", "Instagram"],
            "creatorProfiles": ["a", "b", "c"],
            "posts": ["p1", " ", "p2", 7],
            "Campaign Thumbnail": "//cdn.test/thumb.png",
            "Created Date": "2024-05-01T12:00:00Z",
            "Archive": True,
        },
        "legacy",
    )

    assert campaign is not None
    assert campaign.title == "Drake - New Single"
    assert campaign.slug == "drake-new-single-00000x42"
    assert campaign.budget == 2500.0
    assert campaign.org_id == "org-1"
    assert campaign.platforms == "TikTok | Instagram"
    assert campaign.creator_count == 3
    assert campaign.total_posts == 4
    assert campaign.post_ids == ["p1", "p2"]
    assert campaign.thumbnail == "https://cdn.test/thumb.png"
    assert campaign.created_at == datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
    assert campaign.archived is True


def test_normalize_campaign_defaults_title_and_sanitizes_slug() -> None:
    campaign = normalize_campaign({"_id": "abc123", "slug": "Untitled"}, "legacy")
    assert campaign is not None
    assert campaign.title == DEFAULT_TITLE
    assert campaign.slug == "untitled-abc123"
    assert campaign_slug("abc123", "  Summer Push!! ", "ignored") == "summer-push"


def test_extract_api_cost_usd_takes_largest_cost_like_value() -> None:
    raw = {
        "Cost": "$1,250.50",
        "creator rate": {"amount": 900},
        "fee": -5,
        "priceFlag": True,
        "title": 99999,
    }
    assert extract_api_cost_usd(raw) == 1250.5
    assert extract_api_cost_usd({"title": "x"}) is None


def test_normalize_post_validates_url_and_clamps_views() -> None:
    post = normalize_post(
        {
            "_id": "p1",
            "campaign": "c1",
            "Username": "Nova",
            "Platform": "TikTok",
            "Post URL": "https://www.tiktok.com/@nova/video/1",
            "Views": "-20",
            "Post Date": "2024-05-02T08:30:00",
        },
        "legacy",
    )
    assert post is not None
    assert post.url_valid is True
    assert post.url_reason == "valid"
    assert post.views == 0
    assert post.post_date == datetime(2024, 5, 2, 8, 30, tzinfo=timezone.utc)
    assert post.canonical_key.startswith("url:")


def test_normalize_post_prefers_latest_engagement_over_views() -> None:
    post = normalize_post({"_id": "p1", "latestViews/Engagement": 1500, "Views": 10}, "legacy")
    assert post is not None
    assert post.views == 1500
    assert post.url_reason == "missing_url"
    assert post.canonical_key.startswith("fallback:")


def test_normalize_post_drops_disallowed_urls_in_production() -> None:
    raw = {"_id": "p1", "postUrl": "https://example.com/fixture"}
    assert normalize_post(raw, "legacy", NormalizationContext(production=True)) is None
    kept = normalize_post(raw, "legacy")
    assert kept is not None
    assert kept.url_reason == "disallowed_domain"


def test_test_fixture_flag_requires_opt_in_and_fixture_source() -> None:
    raw = {"_id": "c1", "title": "Genre Sort fixture"}
    allowed = NormalizationContext(allow_test_fixtures=True)

    flagged = normalize_campaign(raw, "itabc_source_a", allowed)
    assert flagged is not None and flagged.is_test_data is True

    not_opted_in = normalize_campaign(raw, "itabc_source_a")
    assert not_opted_in is not None and not_opted_in.is_test_data is False

    other_source = normalize_campaign(raw, "agency-a", allowed)
    assert other_source is not None and other_source.is_test_data is False
