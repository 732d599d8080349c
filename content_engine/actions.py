"""Administrative action dispatcher.

Maps action names to engine operations. Every call returns a dict carrying
``success``; engine errors and malformed input become ``success: False``
instead of propagating.
"""

from typing import Any, Awaitable, Callable, Dict, List, Optional

import structlog
from pydantic import ValidationError

from content_engine.engine import Engine
from content_engine.errors import EngineError, UnknownActionError
from content_engine.models import ContentBucket, ContentType, Priority

logger = structlog.get_logger(__name__)

ActionHandler = Callable[[Dict[str, Any]], Awaitable[Dict[str, Any]]]


class ActionDispatcher:
    """Runs named administrative actions against one engine."""

    def __init__(self, engine: Engine):
        self.engine = engine
        self._handlers: Dict[str, ActionHandler] = {
            "schedule_job": self.schedule_job,
            "execute_job": self.execute_job,
            "batch_fetch": self.batch_fetch,
            "monitor_quotas": self.monitor_quotas,
            "cleanup_cache": self.cleanup_cache,
            "resolve": self.resolve,
            "job_status": self.job_status,
            "stats": self.stats,
        }

    @property
    def actions(self) -> List[str]:
        return sorted(self._handlers)

    async def dispatch(self, action: str, data: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Run ``action`` with its ``data`` payload.

        Returns:
            The action's result with ``success: True``, or ``success: False``
            and an ``error`` message
        """
        handler = self._handlers.get(action)
        try:
            if handler is None:
                raise UnknownActionError(action)
            result = await handler(data or {})
        except EngineError as e:
            logger.warning("action_failed", action=action, error=e.message, category=e.category.value)
            return {"success": False, "error": e.message, "details": e.to_dict()}
        except (ValidationError, ValueError, KeyError, TypeError) as e:
            logger.warning("action_rejected", action=action, error=str(e))
            return {"success": False, "error": f"Invalid data for {action}: {e}"}
        logger.info("action_completed", action=action)
        return {"success": True, **result}

    def _bucket(self, data: Dict[str, Any]) -> ContentBucket:
        return self.engine.bucket(
            ContentType(data["content_type"]),
            data.get("keywords") or [],
            provider=data.get("provider"),
            priority=Priority(data.get("priority", Priority.MEDIUM.value)),
            count=data.get("count"),
        )

    async def schedule_job(self, data: Dict[str, Any]) -> Dict[str, Any]:
        job = self.engine.schedule_bucket_job(
            self._bucket(data),
            interval_seconds=data.get("interval_seconds"),
            job_id=data.get("job_id"),
        )
        return {"job": job.to_dict()}

    async def execute_job(self, data: Dict[str, Any]) -> Dict[str, Any]:
        run = await self.engine.scheduler.execute_job(data["job_id"])
        if run is None:
            return {"executed": False, "reason": "already_running"}
        return {"executed": True, "run": run.to_dict(), "result": run.result}

    async def batch_fetch(self, data: Dict[str, Any]) -> Dict[str, Any]:
        """Fetch several buckets in one go.

        Accepts either ``buckets`` (a list of bucket dicts) or
        ``content_types`` with shared ``keywords``, ``priority`` and ``count``.
        """
        if "buckets" in data:
            buckets = [self._bucket(item) for item in data["buckets"]]
        else:
            shared = {k: data[k] for k in ("keywords", "priority", "count", "provider") if k in data}
            buckets = [self._bucket({**shared, "content_type": ct}) for ct in data["content_types"]]
        results = await self.engine.batch_fetch(buckets)
        return {
            "batch_id": data.get("batch_id"),
            "results": {key: result.to_dict() for key, result in results.items()},
        }

    async def monitor_quotas(self, data: Dict[str, Any]) -> Dict[str, Any]:
        return {"quotas": self.engine.monitor_quotas()}

    async def cleanup_cache(self, data: Dict[str, Any]) -> Dict[str, Any]:
        outcome = await self.engine.cleanup(force=data.get("force", True))
        return {"swept": outcome["swept"]}

    async def resolve(self, data: Dict[str, Any]) -> Dict[str, Any]:
        result = await self.engine.resolve(self._bucket(data))
        return {"result": result.to_dict()}

    async def job_status(self, data: Dict[str, Any]) -> Dict[str, Any]:
        if "job_id" in data:
            job = self.engine.scheduler.get_job(data["job_id"])
            return {
                "job": job.to_dict(),
                "history": [run.to_dict() for run in job.history],
            }
        return {"jobs": self.engine.scheduler.job_status()}

    async def stats(self, data: Dict[str, Any]) -> Dict[str, Any]:
        return self.engine.observability()
