#!/usr/bin/env python3
"""
Operational activity log.

Entries go to the regular logger and are persisted to the ``logs`` table so
operators can review sweep history. Persisting is best-effort: a failure is
reported on the stdlib logger and never reaches the caller.
"""

from typing import Any, Dict, Optional

from config import get_logger
from errors import LoggingFailure, PipelineError

logger = get_logger("activity")


class ActivityLog:
    def __init__(self, db=None):
        self.db = db

    async def _write(self, level: str, message: str, context: Optional[Dict[str, Any]]) -> None:
        log_method = {"info": logger.info, "warn": logger.warning, "error": logger.error}[level]
        log_method("%s %s", message, context or "")
        try:
            await self._persist(level, message, context)
        except LoggingFailure as e:
            logger.warning(str(e))

    async def _persist(self, level: str, message: str, context: Optional[Dict[str, Any]]) -> None:
        if self.db is None:
            return
        try:
            await self.db.execute('write_log', level=level, message=message, context=context)
        except (PipelineError, OSError, ValueError, TypeError) as e:
            raise LoggingFailure(f"Could not persist log entry: {e}") from e

    async def info(self, message: str, context: Optional[Dict[str, Any]] = None) -> None:
        await self._write("info", message, context)

    async def warn(self, message: str, context: Optional[Dict[str, Any]] = None) -> None:
        await self._write("warn", message, context)

    async def error(self, message: str, context: Optional[Dict[str, Any]] = None) -> None:
        await self._write("error", message, context)
