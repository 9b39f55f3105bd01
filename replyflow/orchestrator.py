import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from replyflow import monitoring
from replyflow.config import Settings


@dataclass
class ItemResult:
    id: int
    outcome: str
    detail: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        payload = {"id": self.id, "outcome": self.outcome}
        payload.update(self.detail)
        return payload


@dataclass
class StageReport:
    stage: str
    results: List[ItemResult] = field(default_factory=list)

    @property
    def processed(self) -> int:
        return len(self.results)

    def to_dict(self) -> Dict[str, Any]:
        return {"ok": True, "processed": self.processed, "results": [r.to_dict() for r in self.results]}


class Stage:
    """One batch step of the pipeline.

    Subclasses pick a bounded batch of work items and process them one at a
    time. A failing item is recorded in the report and moved to a safe state
    by ``on_error``; it never aborts the rest of the batch. Configuration
    problems surface from ``preflight`` before any item is touched.
    """

    name = "stage"
    default_limit = 25
    max_limit = 50

    def __init__(self, settings: Settings, llm=None, *, logger: Optional[logging.Logger] = None):
        self.settings = settings
        self.llm = llm
        self.logger = logger or logging.getLogger(f"replyflow.{self.name}")

    async def preflight(self) -> None:
        return None

    async def select_batch(self, limit: int) -> List[int]:
        raise NotImplementedError

    async def process(self, item_id: int) -> ItemResult:
        raise NotImplementedError

    async def on_error(self, item_id: int, exc: Exception) -> None:
        return None

    def clamp_limit(self, limit: Optional[int]) -> int:
        if limit is None:
            limit = self.default_limit
        return max(1, min(self.max_limit, int(limit)))

    async def run(self, limit: Optional[int] = None) -> StageReport:
        report = StageReport(stage=self.name)
        await self.preflight()
        item_ids = await self.select_batch(self.clamp_limit(limit))
        self._log("batch", "start", extra={"items": len(item_ids)})
        for item_id in item_ids:
            report.results.append(await self.run_item(item_id))
        self._log("batch", "done", extra={"processed": report.processed})
        return report

    async def run_item(self, item_id: int) -> ItemResult:
        started = time.perf_counter()
        error_text: Optional[str] = None
        try:
            result = await self.process(item_id)
            success = result.outcome != "error"
        except Exception as exc:
            monitoring.capture_exception(exc)
            error_text = monitoring.format_exception(exc)
            result = ItemResult(id=item_id, outcome="error", detail={"error": str(exc) or type(exc).__name__})
            success = False
            try:
                await self.on_error(item_id, exc)
            except Exception as inner:  # pragma: no cover - store unavailable
                monitoring.capture_exception(inner)
        duration_ms = (time.perf_counter() - started) * 1000
        await monitoring.record_run(
            stage=self.name,
            item_id=item_id,
            agent_id=result.detail.get("agent_id"),
            outcome=result.outcome,
            success=success,
            duration_ms=duration_ms,
            error_text=error_text,
        )
        self._log("item", result.outcome, extra={"id": item_id, "duration_ms": round(duration_ms, 1)})
        return result

    def _log(self, step: str, status: str, extra: Optional[Dict[str, Any]] = None) -> None:
        payload = {"stage": self.name, "step": step, "status": status}
        if extra:
            payload.update(extra)
        self.logger.info("pipeline", extra={"pipeline": payload})
