import pytest

from config import config
from entities import Article
from errors import ArticleNotFound, ContentTooShort
from processor import ArticleProcessor, extract_article
from utils import RateLimiter

SENTENCE = "The river walk opens along the eastern bank with benches, lighting and planted terraces for residents. "

ARTICLE_PAGE = f"""<html><head>
<title>River walk</title>
<meta property="og:image" content="https://cdn.example.com/river.jpg">
</head><body>
<nav>Home | News | Sport</nav>
<article><h1>City opens new river walk</h1><p>{SENTENCE * 10}</p></article>
<footer>Copyright</footer>
</body></html>"""

TINY_PAGE = "<html><body><p>Too little.</p></body></html>"


@pytest.fixture(autouse=True)
def fast_config(monkeypatch):
    monkeypatch.setattr(config, 'MAX_RETRIES', 0)


def _processor(db, session):
    return ArticleProcessor(db, session, pacing=RateLimiter(min_interval=0))


async def _queue(db, article_id, url, title="City opens new river walk", summary=""):
    article = Article(id=article_id, url=url, source_id="src", title=title, summary=summary)
    await db.execute('upsert_article', article=article.to_row())


async def _load(db, article_id):
    return Article.from_row(await db.execute('get_article', article_id=article_id))


def test_extract_article_prefers_main_text_and_og_image():
    text, image = extract_article(ARTICLE_PAGE, "https://news.example.com/river")

    assert "river walk opens" in text
    assert "Copyright" not in text
    assert image == "https://cdn.example.com/river.jpg"


def test_extract_article_falls_back_to_twitter_image():
    page = ARTICLE_PAGE.replace('property="og:image"', 'name="twitter:image"')

    _, image = extract_article(page)

    assert image == "https://cdn.example.com/river.jpg"


def test_extract_article_rejects_short_pages():
    with pytest.raises(ContentTooShort):
        extract_article(TINY_PAGE)


def test_extract_article_respects_max_chars():
    text, _ = extract_article(ARTICLE_PAGE, min_chars=10, max_chars=200)

    assert len(text) <= 200


def test_clamp_limit():
    processor = ArticleProcessor(None, None, pacing=RateLimiter(min_interval=0))

    assert processor.clamp_limit(None) == 10
    assert processor.clamp_limit(0) == 10
    assert processor.clamp_limit(-4) == 10
    assert processor.clamp_limit(25) == 25
    assert processor.clamp_limit(500) == 50


@pytest.mark.asyncio
async def test_good_article_is_published_and_enriched(db, origin, session):
    origin.set("/river", ARTICLE_PAGE, headers={"Content-Type": "text/html"})
    await _queue(db, "a1", origin.url("/river"))

    result = await _processor(db, session).process_queue(5)

    assert result.to_dict()["processed"] == 1
    article = await _load(db, "a1")
    assert article.lifecycle == "published"
    assert article.quality_score == 100
    assert article.image == "https://cdn.example.com/river.jpg"
    assert article.fetch_error is None
    assert article.last_fetched_at is not None
    assert article.reading_time == 1
    assert "river" in article.keywords
    assert "river walk opens" in article.summary
    assert "planted terraces" in article.content


@pytest.mark.asyncio
async def test_press_release_is_blocked(db, origin, session):
    origin.set("/wire", ARTICLE_PAGE)
    await _queue(db, "a1", origin.url("/wire"), title="Press release: Acme sponsors river walk")

    await _processor(db, session).process_queue()

    article = await _load(db, "a1")
    assert article.lifecycle == "blocked"
    assert article.quality_score == 50


@pytest.mark.asyncio
async def test_blocked_source_publishes_feed_copy(db, origin, session):
    origin.set("/paywall", "Forbidden", status=403)
    await _queue(db, "a1", origin.url("/paywall"), summary="Feed summary kept as-is")

    result = await _processor(db, session).process_queue()

    assert (result.processed, result.skipped, result.failed) == (0, 1, 0)
    article = await _load(db, "a1")
    assert article.lifecycle == "published"
    assert article.fetch_error == "Blocked by source (HTTP 403)"
    assert article.summary == "Feed summary kept as-is"


@pytest.mark.asyncio
async def test_short_content_is_an_error(db, origin, session):
    origin.set("/tiny", TINY_PAGE)
    await _queue(db, "a1", origin.url("/tiny"))

    result = await _processor(db, session).process_queue()

    assert result.failed == 1
    article = await _load(db, "a1")
    assert article.lifecycle == "error"
    assert article.fetch_error == "Content too short"


@pytest.mark.asyncio
async def test_missing_page_is_an_error(db, origin, session):
    await _queue(db, "a1", origin.url("/gone"))

    result = await _processor(db, session).process_queue()

    assert result.failed == 1
    article = await _load(db, "a1")
    assert article.lifecycle == "error"
    assert article.fetch_error == "HTTP 404"


@pytest.mark.asyncio
async def test_one_bad_article_does_not_stop_the_batch(db, origin, session):
    origin.set("/river", ARTICLE_PAGE)
    await _queue(db, "a1", origin.url("/gone"))
    await _queue(db, "a2", origin.url("/river"))

    result = await _processor(db, session).process_queue()

    assert (result.processed, result.failed) == (1, 1)
    assert await db.execute('count_articles', lifecycle='queued') == 0


@pytest.mark.asyncio
async def test_limit_bounds_the_batch(db, origin, session):
    origin.set("/river", ARTICLE_PAGE)
    for i in range(3):
        await _queue(db, f"a{i}", origin.url("/river"))

    result = await _processor(db, session).process_queue(2)

    assert result.processed == 2
    assert await db.execute('count_articles', lifecycle='queued') == 1


@pytest.mark.asyncio
async def test_empty_queue(db, session):
    result = await _processor(db, session).process_queue()

    assert result.to_dict() == {
        "ok": True, "processed": 0, "skipped": 0, "failed": 0,
        "durationMs": result.duration_ms, "message": "Queue empty",
    }


@pytest.mark.asyncio
async def test_page_is_decoded_with_its_declared_charset(db, origin, session):
    page = ARTICLE_PAGE.replace("planted terraces", "Café crème brûlée stalls")
    origin.set("/latin", page.encode("iso-8859-1"), headers={"Content-Type": "text/html; charset=iso-8859-1"})
    await _queue(db, "a1", origin.url("/latin"))

    await _processor(db, session).process_queue()

    article = await _load(db, "a1")
    assert "Café crème brûlée" in article.content
    assert "\ufffd" not in article.content


@pytest.mark.asyncio
async def test_fetch_one_processes_any_lifecycle(db, origin, session):
    origin.set("/river", ARTICLE_PAGE)
    await _queue(db, "a1", origin.url("/river"))
    await db.execute('update_article', article_id="a1", fields={"lifecycle": "error", "fetch_error": "HTTP 500"})

    result = await _processor(db, session).fetch_one("a1")

    assert result.outcome == "processed"
    assert result.status_code == 200
    body = result.to_dict()
    assert body["ok"] is True
    assert body["lifecycle"] == "published"
    assert body["qualityScore"] == 100
    assert body["hasImage"] is True
    assert body["contentLength"] > 100
    assert (await _load(db, "a1")).fetch_error is None


@pytest.mark.asyncio
async def test_fetch_one_skips_articles_with_content_unless_forced(db, origin, session):
    origin.set("/river", ARTICLE_PAGE)
    await _queue(db, "a1", origin.url("/river"))
    await db.execute('update_article', article_id="a1", fields={"content": "Stored text. " * 20})
    processor = _processor(db, session)

    skipped = await processor.fetch_one("a1")

    assert skipped.outcome == "skipped"
    assert skipped.to_dict()["skipped"] is True
    assert skipped.to_dict()["message"] == "Content already exists"
    assert origin.hits("/river") == 0

    forced = await processor.fetch_one("a1", force=True)

    assert forced.outcome == "processed"
    assert origin.hits("/river") == 1
    assert "planted terraces" in (await _load(db, "a1")).content


@pytest.mark.asyncio
async def test_fetch_one_refetches_when_stored_content_is_short(db, origin, session):
    origin.set("/river", ARTICLE_PAGE)
    await _queue(db, "a1", origin.url("/river"))
    await db.execute('update_article', article_id="a1", fields={"content": "Teaser only."})

    result = await _processor(db, session).fetch_one("a1")

    assert result.outcome == "processed"
    assert origin.hits("/river") == 1


@pytest.mark.asyncio
async def test_fetch_one_failure_reports_the_error(db, origin, session):
    await _queue(db, "a1", origin.url("/gone"))

    result = await _processor(db, session).fetch_one("a1")

    assert result.outcome == "failed"
    assert result.status_code == 422
    assert result.to_dict() == {"ok": False, "articleId": "a1", "error": "HTTP 404"}


@pytest.mark.asyncio
async def test_fetch_one_unknown_article(db, session):
    with pytest.raises(ArticleNotFound):
        await _processor(db, session).fetch_one("missing")
