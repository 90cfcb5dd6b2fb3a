from entities import LIFECYCLE_BLOCKED, LIFECYCLE_PUBLISHED
from quality import QualityFilters, assess_quality

LONG_BODY = " ".join(["The council approved a new budget for road repairs this spring."] * 15)


def test_two_clickbait_matches_and_short_content_score_30_and_block():
    title = "You won't believe the shocking truth about city parking"
    assessment = assess_quality(title, "Only a few words here.")

    assert assessment.clickbait_score == 40
    assert assessment.is_clickbait
    assert assessment.too_short
    assert assessment.score == 30
    assert assessment.lifecycle == LIFECYCLE_BLOCKED


def test_single_clickbait_match_is_not_blocking():
    assessment = assess_quality("Top 5 reasons the bridge closed", LONG_BODY)

    assert assessment.score == 80
    assert not assessment.is_clickbait
    assert assessment.lifecycle == LIFECYCLE_PUBLISHED


def test_press_release_is_penalised_and_blocked():
    body = LONG_BODY + " Source: Business Wire"
    assessment = assess_quality("Acme announces quarterly results", body)

    assert assessment.is_press_release
    assert assessment.score == 50
    assert assessment.lifecycle == LIFECYCLE_BLOCKED


def test_clean_article_scores_100():
    assessment = assess_quality("Council approves road budget", LONG_BODY)
    assert assessment.score == 100
    assert assessment.lifecycle == LIFECYCLE_PUBLISHED


def test_min_word_count_threshold():
    assert QualityFilters.has_min_word_count("one two three", min_words=3)
    assert not QualityFilters.has_min_word_count("one two", min_words=3)
    assert not QualityFilters.has_min_word_count("   ")


def test_press_release_patterns():
    assert QualityFilters.is_press_release("PRNewswire: Widget launch", "")
    assert QualityFilters.is_press_release("Widget launch", "Distributed via BusinessWire today")
    assert not QualityFilters.is_press_release("Widget launch", "Reporters tested the widget")
