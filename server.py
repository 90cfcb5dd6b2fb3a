#!/usr/bin/env python3
"""
HTTP surface for the sweeper, built on aiohttp.web.

Routes:
  POST /feeds/{feed_id}/sweep[?force=true]
  POST /feeds/{feed_id}/enable
  POST|GET /cron/sweep-all[?force=true]
  POST|GET /articles/process-queue[?limit=N]
  POST /articles/{article_id}/fetch[?force=true]
  GET /health
  GET /logs[?limit=N&level=error]
  POST /admin/reset-feeds
  POST /admin/cleanup
"""

from typing import Optional

from aiohttp import web

from config import config, get_logger
from errors import ArticleNotFound, FeedNotFound, PipelineError
from pipeline import FeedPipeline

logger = get_logger("server")

PIPELINE_KEY = web.AppKey("pipeline", FeedPipeline)


def _flag(request: web.Request, name: str) -> bool:
    return request.query.get(name, "").lower() in ("1", "true", "yes")


def _int_param(request: web.Request, name: str) -> Optional[int]:
    value = request.query.get(name)
    if value is None:
        return None
    try:
        return int(value)
    except ValueError:
        raise web.HTTPBadRequest(
            text=f'{{"ok": false, "error": "Invalid {name}"}}', content_type="application/json"
        )


async def sweep_feed(request: web.Request) -> web.Response:
    pipeline = request.app[PIPELINE_KEY]
    feed_id = request.match_info.get("feed_id", "").strip()
    if not feed_id:
        return web.json_response({"ok": False, "error": "Missing feed id"}, status=400)
    try:
        outcome = await pipeline.sweeper.sweep(feed_id, force=_flag(request, "force"))
    except FeedNotFound as e:
        return web.json_response({"ok": False, "error": str(e)}, status=404)
    except PipelineError as e:
        logger.error(f"Sweep of {feed_id} failed before reaching the feed: {e}")
        return web.json_response({"ok": False, "error": str(e)}, status=500)
    return web.json_response(outcome.to_dict(), status=outcome.status_code)


async def enable_feed(request: web.Request) -> web.Response:
    pipeline = request.app[PIPELINE_KEY]
    feed_id = request.match_info.get("feed_id", "").strip()
    if not feed_id:
        return web.json_response({"ok": False, "error": "Missing feed id"}, status=400)
    try:
        feed = await pipeline.sweeper.enable(feed_id)
    except FeedNotFound as e:
        return web.json_response({"ok": False, "error": str(e)}, status=404)
    except PipelineError as e:
        return web.json_response({"ok": False, "error": str(e)}, status=500)
    return web.json_response({"ok": True, "feed": feed.to_dict()})


async def sweep_all(request: web.Request) -> web.Response:
    pipeline = request.app[PIPELINE_KEY]
    result = await pipeline.cron.sweep_all(force=_flag(request, "force"))
    # Always 200 so callers can read partial results
    return web.json_response(result.to_dict())


async def process_queue(request: web.Request) -> web.Response:
    pipeline = request.app[PIPELINE_KEY]
    result = await pipeline.processor.process_queue(_int_param(request, "limit"))
    return web.json_response(result.to_dict(), status=200 if result.ok else 500)


async def fetch_article(request: web.Request) -> web.Response:
    pipeline = request.app[PIPELINE_KEY]
    article_id = request.match_info.get("article_id", "").strip()
    if not article_id:
        return web.json_response({"ok": False, "error": "Missing article id"}, status=400)
    try:
        result = await pipeline.processor.fetch_one(article_id, force=_flag(request, "force"))
    except ArticleNotFound as e:
        return web.json_response({"ok": False, "error": str(e)}, status=404)
    except PipelineError as e:
        logger.error(f"Fetch of article {article_id} failed: {e}")
        return web.json_response({"ok": False, "error": str(e)}, status=500)
    return web.json_response(result.to_dict(), status=result.status_code)


async def health(request: web.Request) -> web.Response:
    pipeline = request.app[PIPELINE_KEY]
    try:
        payload = await pipeline.health()
    except PipelineError as e:
        logger.error(f"Health check failed: {e}")
        return web.json_response({"ok": False, "error": "Database unavailable"}, status=500)
    return web.json_response(payload)


async def logs(request: web.Request) -> web.Response:
    pipeline = request.app[PIPELINE_KEY]
    limit = min(_int_param(request, "limit") or 50, 500)
    entries = await pipeline.db.execute('recent_logs', limit=limit, level=request.query.get("level"))
    return web.json_response({"ok": True, "logs": entries})


async def reset_feeds(request: web.Request) -> web.Response:
    pipeline = request.app[PIPELINE_KEY]
    try:
        reset = await pipeline.reset_feeds()
    except PipelineError as e:
        return web.json_response({"ok": False, "error": str(e)}, status=500)
    return web.json_response({"ok": True, "reset": reset, "message": "Reset all feed health statuses."})


async def cleanup(request: web.Request) -> web.Response:
    pipeline = request.app[PIPELINE_KEY]
    try:
        deleted = await pipeline.cleanup_orphans()
    except PipelineError as e:
        return web.json_response({"ok": False, "error": str(e)}, status=500)
    return web.json_response({
        "ok": True,
        "deleted": deleted,
        "message": f"Cleaned up {deleted} orphaned articles",
    })


def create_app(pipeline: Optional[FeedPipeline] = None) -> web.Application:
    """Build the application; the pipeline is initialized on startup and closed on cleanup."""
    app = web.Application()
    app[PIPELINE_KEY] = pipeline or FeedPipeline()

    async def _startup(app: web.Application) -> None:
        await app[PIPELINE_KEY].initialize()

    async def _cleanup(app: web.Application) -> None:
        await app[PIPELINE_KEY].close()

    app.on_startup.append(_startup)
    app.on_cleanup.append(_cleanup)

    app.router.add_post("/feeds/{feed_id}/sweep", sweep_feed)
    app.router.add_post("/feeds/{feed_id}/enable", enable_feed)
    for path, handler in (("/cron/sweep-all", sweep_all), ("/articles/process-queue", process_queue)):
        app.router.add_post(path, handler)
        app.router.add_get(path, handler)
    app.router.add_post("/articles/{article_id}/fetch", fetch_article)
    app.router.add_get("/health", health)
    app.router.add_get("/logs", logs)
    app.router.add_post("/admin/reset-feeds", reset_feeds)
    app.router.add_post("/admin/cleanup", cleanup)
    return app


def run_server(host: Optional[str] = None, port: Optional[int] = None) -> None:
    host = host or config.SERVER_HOST
    port = port or config.SERVER_PORT
    logger.info(f"Serving on http://{host}:{port}")
    web.run_app(create_app(), host=host, port=port, print=None)
