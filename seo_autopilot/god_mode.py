"""
God Mode -- autonomous scan, score, generate and publish loop.

Each cycle scores the crawled site's pages, queues the weak ones by
priority, and (within the configured working hours and daily quota)
regenerates one queued page and optionally publishes the result.

Usage:
    from seo_autopilot.god_mode import GodModeEngine, GodModeConfig

    engine = GodModeEngine(
        config=GodModeConfig(auto_publish=True),
        sitemap_urls=urls,
        ai_configured=True,
        scorer=scorer,
        orchestrator=orchestrator,
        publisher=publisher,
        store=store,
    )
    await engine.start()
    ...
    await engine.stop()
"""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
import re
import uuid
from dataclasses import asdict, dataclass, field, fields
from datetime import datetime, timedelta
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Set, Union

from seo_autopilot.internal_link_engine import pages_from_urls
from seo_autopilot.url_utils import last_path_segment

logger = logging.getLogger("god_mode")
logger.setLevel(logging.DEBUG)

if not logger.handlers:
    _handler = logging.StreamHandler()
    _handler.setFormatter(
        logging.Formatter(
            "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
    )
    logger.addHandler(_handler)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

MAX_ACTIVITY_ENTRIES = 100
MAX_HISTORY_ENTRIES = 500
MAX_URLS_PER_SCAN = 50
SCAN_CONCURRENCY = 2

NO_URLS_MESSAGE = "No URLs available. Please crawl a sitemap first or add priority URLs."
NO_AI_KEY_MESSAGE = "No AI API key configured. Please add at least one API key in Setup."

PRIORITY_ORDER = ("critical", "high", "medium", "low")
PRIORITY_RANK = {name: rank for rank, name in enumerate(PRIORITY_ORDER)}


class GodModeError(Exception):
    """Raised when the engine cannot be started."""
    pass


class EngineStatus(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    PAUSED = "paused"
    ERROR = "error"


class EnginePhase(str, Enum):
    IDLE = "idle"
    SCANNING = "scanning"
    SCORING = "scoring"
    GENERATING = "generating"
    PUBLISHING = "publishing"


def _now() -> datetime:
    return datetime.now().astimezone()


def _new_id() -> str:
    return uuid.uuid4().hex[:12]


def _filter_fields(cls, data: Dict[str, Any]) -> Dict[str, Any]:
    valid = {f.name for f in fields(cls)}
    return {k: v for k, v in data.items() if k in valid}


def priority_for_score(score: int) -> str:
    """Map a health score to a queue priority."""
    if score < 30:
        return "critical"
    if score < 50:
        return "high"
    if score < 70:
        return "medium"
    return "low"


def keyword_from_url(url: str) -> str:
    """Derive a target keyword from the last path segment of *url*."""
    base = url.split("?", 1)[0].split("#", 1)[0]
    slug = last_path_segment(base)
    if "://" in base and slug == base.split("://", 1)[1].strip("/"):
        # bare domain
        slug = ""
    slug = re.sub(r"\.(html?|php|aspx?)$", "", slug, flags=re.IGNORECASE)
    words = [w for w in re.split(r"[-_+\s]+", slug) if w]
    return " ".join(words).lower()


# ---------------------------------------------------------------------------
# Data classes
# ---------------------------------------------------------------------------


@dataclass
class GodModeConfig:
    """Tunable engine settings."""

    scan_interval_hours: float = 24
    min_health_score: int = 70
    processing_interval_minutes: float = 30
    quality_threshold: int = 80
    retry_attempts: int = 3
    auto_publish: bool = False
    default_status: str = "draft"
    max_per_day: int = 5
    active_hours_start: int = 9
    active_hours_end: int = 17
    enable_weekends: bool = False

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> GodModeConfig:
        return cls(**_filter_fields(cls, data))


@dataclass
class QueueItem:
    url: str
    priority: str = "medium"
    health_score: int = 0
    source: str = "scan"  # scan, manual, priority
    retry_count: int = 0
    id: str = field(default_factory=_new_id)
    added_at: str = field(default_factory=lambda: _now().isoformat())

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> QueueItem:
        return cls(**_filter_fields(cls, data))


@dataclass
class HistoryItem:
    url: str
    action: str  # published, generated, skipped, error
    quality_score: Optional[int] = None
    word_count: Optional[int] = None
    wordpress_url: Optional[str] = None
    error: Optional[str] = None
    id: str = field(default_factory=_new_id)
    timestamp: str = field(default_factory=lambda: _now().isoformat())

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> HistoryItem:
        return cls(**_filter_fields(cls, data))


@dataclass
class ActivityItem:
    message: str
    type: str = "info"  # info, success, warning, error
    details: Optional[str] = None
    id: str = field(default_factory=_new_id)
    timestamp: str = field(default_factory=lambda: _now().isoformat())

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> ActivityItem:
        return cls(**_filter_fields(cls, data))


@dataclass
class GodModeStats:
    cycle_count: int = 0
    last_scan_at: Optional[str] = None
    next_scan_at: Optional[str] = None
    total_processed: int = 0
    success_count: int = 0
    error_count: int = 0
    avg_quality_score: float = 0.0
    scored_count: int = 0
    total_words_generated: int = 0
    published_today: int = 0
    today: str = ""

    def record_quality(self, score: int) -> None:
        self.scored_count += 1
        self.avg_quality_score += (score - self.avg_quality_score) / self.scored_count

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> GodModeStats:
        return cls(**_filter_fields(cls, data))


@dataclass
class GodModeState:
    status: EngineStatus = EngineStatus.IDLE
    current_phase: EnginePhase = EnginePhase.IDLE
    current_url: Optional[str] = None
    queue: List[QueueItem] = field(default_factory=list)
    history: List[HistoryItem] = field(default_factory=list)
    activity_log: List[ActivityItem] = field(default_factory=list)
    stats: GodModeStats = field(default_factory=GodModeStats)

    def to_dict(self) -> dict:
        return {
            "status": self.status.value,
            "current_phase": self.current_phase.value,
            "current_url": self.current_url,
            "queue": [q.to_dict() for q in self.queue],
            "history": [h.to_dict() for h in self.history],
            "activity_log": [a.to_dict() for a in self.activity_log],
            "stats": self.stats.to_dict(),
        }


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------

PriorityUrl = Union[str, Dict[str, Any]]


class GodModeEngine:
    """
    The autonomous maintenance loop.

    Parameters
    ----------
    config : GodModeConfig, optional
    sitemap_urls : iterable of str
        Crawled page URLs; the scan candidates and internal-link targets.
    priority_urls : iterable of str or ``{"url", "priority"}`` dicts
        Queued once, ahead of scanning, with source ``"priority"``.
    excluded_urls : iterable of str
        Never scanned.
    excluded_categories : iterable of str
        Path segments; URLs containing ``/<category>/`` are never scanned.
    priority_only_mode : bool
        Skip scanning and only work the priority queue.
    ai_configured : bool
        Whether an AI key is available; ``start()`` refuses otherwise.
    scorer : SEOHealthScorer
        Needs ``async batch_analyze(urls, concurrency=..., cancel_event=...)``.
    orchestrator : ContentOrchestrator
        Needs ``async generate_content(keyword, source_url=..., site_pages=...)``.
    publisher : Publisher, optional
        Needs ``async publish(title, content, **options) -> dict``.
    store : ContentStore, optional
        Needs a blocking ``save(item_id, post) -> bool``.
    on_state_update : callable, optional
        Called with :meth:`snapshot` after every state change.
    clock : callable, optional
        Returns the current timezone-aware local time.
    """

    def __init__(
        self,
        config: Optional[GodModeConfig] = None,
        sitemap_urls: Optional[Iterable[str]] = None,
        priority_urls: Optional[Iterable[PriorityUrl]] = None,
        excluded_urls: Optional[Iterable[str]] = None,
        excluded_categories: Optional[Iterable[str]] = None,
        priority_only_mode: bool = False,
        ai_configured: bool = False,
        scorer: Any = None,
        orchestrator: Any = None,
        publisher: Any = None,
        store: Any = None,
        on_state_update: Optional[Callable[[Dict[str, Any]], Any]] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.config = config or GodModeConfig()
        self.sitemap_urls: List[str] = list(sitemap_urls or [])
        self.priority_urls: List[PriorityUrl] = list(priority_urls or [])
        self.excluded_urls = set(excluded_urls or [])
        self.excluded_categories = [c.strip("/").lower() for c in (excluded_categories or []) if c.strip("/")]
        self.priority_only_mode = priority_only_mode
        self.ai_configured = ai_configured
        self.scorer = scorer
        self.orchestrator = orchestrator
        self.publisher = publisher
        self.store = store
        self.on_state_update = on_state_update
        self._clock = clock or _now

        self.state = GodModeState()
        self._task: Optional[asyncio.Task] = None
        self._resume_event = asyncio.Event()
        self._stop_event = asyncio.Event()
        self._priority_seeded = False
        self._listener_tasks: Set[asyncio.Future] = set()

    # ------------------------------------------------------------------
    # State helpers
    # ------------------------------------------------------------------

    def snapshot(self) -> Dict[str, Any]:
        data = self.state.to_dict()
        data["config"] = self.config.to_dict()
        return data

    def _notify(self) -> None:
        if self.on_state_update is None:
            return
        try:
            result = self.on_state_update(self.snapshot())
            if inspect.isawaitable(result):
                task = asyncio.ensure_future(result)
                self._listener_tasks.add(task)
                task.add_done_callback(self._listener_done)
        except Exception as exc:
            logger.warning("State update callback failed: %s", exc)

    def _listener_done(self, task: asyncio.Future) -> None:
        self._listener_tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.warning("State update callback failed: %s", task.exception())

    def log_activity(self, message: str, type: str = "info", details: Optional[str] = None) -> None:
        level = {"error": logging.ERROR, "warning": logging.WARNING}.get(type, logging.INFO)
        logger.log(level, "%s%s", message, f" ({details})" if details else "")
        self.state.activity_log.insert(0, ActivityItem(message=message, type=type, details=details))
        del self.state.activity_log[MAX_ACTIVITY_ENTRIES:]
        self._notify()

    def _record_history(self, item: HistoryItem) -> None:
        self.state.history.insert(0, item)
        del self.state.history[MAX_HISTORY_ENTRIES:]

    def _set_phase(self, phase: EnginePhase, url: Optional[str] = None) -> None:
        self.state.current_phase = phase
        self.state.current_url = url
        self._notify()

    def _roll_day(self, now: datetime) -> None:
        today = now.date().isoformat()
        if self.state.stats.today != today:
            self.state.stats.today = today
            self.state.stats.published_today = 0

    # ------------------------------------------------------------------
    # Controls
    # ------------------------------------------------------------------

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def check_ready(self) -> None:
        """
        Verify there is something to process and an AI key to process it with.

        Raises
        ------
        GodModeError
            If there is nothing to process or no AI key.
        """
        if not self.sitemap_urls and not self.priority_urls and not self.priority_only_mode:
            raise GodModeError(NO_URLS_MESSAGE)
        if not self.ai_configured:
            raise GodModeError(NO_AI_KEY_MESSAGE)

    async def start(self) -> None:
        """Validate prerequisites and launch the loop as a background task."""
        self.check_ready()

        if self.is_running:
            await self.stop()

        self._stop_event.clear()
        self._resume_event.set()
        self.state.status = EngineStatus.RUNNING
        self._task = asyncio.create_task(self._run_loop())
        self.log_activity(
            "God Mode activated",
            "success",
            f"{len(self.sitemap_urls)} sitemap URLs, {len(self.priority_urls)} priority URLs",
        )

    async def stop(self) -> None:
        self._stop_event.set()
        self._resume_event.set()
        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self.state.status = EngineStatus.IDLE
        self.state.current_phase = EnginePhase.IDLE
        self.state.current_url = None
        self.log_activity("God Mode stopped")

    def pause(self) -> None:
        if self.state.status != EngineStatus.RUNNING:
            return
        self._resume_event.clear()
        self.state.status = EngineStatus.PAUSED
        self.log_activity("God Mode paused", "warning")

    def resume(self) -> None:
        if self.state.status != EngineStatus.PAUSED:
            return
        self.state.status = EngineStatus.RUNNING
        self._resume_event.set()
        self.log_activity("God Mode resumed", "success")

    def update_config(self, **changes: Any) -> GodModeConfig:
        unknown = set(changes) - {f.name for f in fields(GodModeConfig)}
        if unknown:
            raise ValueError(f"Unknown config field(s): {', '.join(sorted(unknown))}")
        for key, value in changes.items():
            setattr(self.config, key, value)
        self._notify()
        return self.config

    # ------------------------------------------------------------------
    # Queue
    # ------------------------------------------------------------------

    def _queued_urls(self) -> set:
        return {item.url for item in self.state.queue}

    def _enqueue(self, item: QueueItem) -> QueueItem:
        self.state.queue.append(item)
        return item

    def add_to_queue(self, url: str, priority: str = "high") -> QueueItem:
        if priority not in PRIORITY_RANK:
            raise ValueError(f"Unknown priority: {priority}")
        item = self._enqueue(QueueItem(url=url, priority=priority, health_score=0, source="manual"))
        self.log_activity(f"Added to queue: {url}", details=priority)
        return item

    def remove_from_queue(self, item_id: str) -> bool:
        before = len(self.state.queue)
        self.state.queue = [q for q in self.state.queue if q.id != item_id]
        removed = len(self.state.queue) != before
        if removed:
            self._notify()
        return removed

    def clear_history(self) -> None:
        self.state.history = []
        self._notify()

    def clear_activity_log(self) -> None:
        self.state.activity_log = []
        self._notify()

    def _pop_next(self) -> Optional[QueueItem]:
        """Highest priority first, oldest first within a priority."""
        if not self.state.queue:
            return None
        best = min(
            range(len(self.state.queue)),
            key=lambda i: (PRIORITY_RANK.get(self.state.queue[i].priority, len(PRIORITY_ORDER)), i),
        )
        return self.state.queue.pop(best)

    def _seed_priority_urls(self) -> None:
        if self._priority_seeded:
            return
        self._priority_seeded = True
        queued = self._queued_urls()
        added = 0
        for entry in self.priority_urls:
            if isinstance(entry, str):
                url, priority = entry, "high"
            else:
                url, priority = entry.get("url", ""), entry.get("priority") or "high"
            if not url or url in queued:
                continue
            self._enqueue(QueueItem(url=url, priority=priority, health_score=0, source="priority"))
            queued.add(url)
            added += 1
        if added:
            self.log_activity(f"Queued {added} priority URL(s)")

    # ------------------------------------------------------------------
    # Scanning
    # ------------------------------------------------------------------

    def _is_excluded(self, url: str) -> bool:
        if url in self.excluded_urls:
            return True
        lowered = url.lower()
        return any(f"/{category}/" in lowered for category in self.excluded_categories)

    def scan_due(self, now: Optional[datetime] = None) -> bool:
        stats = self.state.stats
        if not stats.last_scan_at or not stats.next_scan_at:
            return True
        now = now or self._clock()
        return now >= datetime.fromisoformat(stats.next_scan_at)

    def _scan_candidates(self) -> List[str]:
        queued = self._queued_urls()
        handled = {h.url for h in self.state.history if h.action in ("generated", "published")}
        candidates = [
            url for url in self.sitemap_urls
            if url not in queued and url not in handled and not self._is_excluded(url)
        ]
        return candidates[:MAX_URLS_PER_SCAN]

    async def scan(self) -> int:
        """Score candidate pages and queue the weak ones. Returns the number queued."""
        now = self._clock()
        self._set_phase(EnginePhase.SCANNING)
        candidates = self._scan_candidates()
        self.log_activity(f"Scanning {len(candidates)} page(s)")

        queued = 0
        if candidates and self.scorer is not None:
            self._set_phase(EnginePhase.SCORING)
            analyses = await self.scorer.batch_analyze(
                candidates, concurrency=SCAN_CONCURRENCY, cancel_event=self._stop_event,
            )
            for analysis in analyses:
                if analysis.score < self.config.min_health_score:
                    self._enqueue(QueueItem(
                        url=analysis.url,
                        priority=priority_for_score(analysis.score),
                        health_score=analysis.score,
                        source="scan",
                    ))
                    queued += 1

        self.state.stats.last_scan_at = now.isoformat()
        self.state.stats.next_scan_at = (now + timedelta(hours=self.config.scan_interval_hours)).isoformat()
        self.log_activity(
            f"Scan complete: {queued} page(s) need attention",
            "success" if queued else "info",
        )
        return queued

    # ------------------------------------------------------------------
    # Processing
    # ------------------------------------------------------------------

    def within_schedule(self, now: Optional[datetime] = None) -> bool:
        now = now or self._clock()
        if not self.config.enable_weekends and now.weekday() >= 5:
            return False
        return self.config.active_hours_start <= now.hour < self.config.active_hours_end

    async def _save_content(self, item: QueueItem, content: Any) -> None:
        if self.store is None:
            return
        saved = await asyncio.to_thread(self.store.save, item.id, content.to_dict())
        if not saved:
            self.log_activity("Could not save generated content", "warning", item.url)

    async def process_item(self, item: QueueItem) -> HistoryItem:
        """Generate (and optionally publish) content for one queue item."""
        keyword = keyword_from_url(item.url)
        self._set_phase(EnginePhase.GENERATING, item.url)
        self.log_activity(f"Generating content for '{keyword}'", details=item.url)

        content = await self.orchestrator.generate_content(
            keyword,
            source_url=item.url,
            site_pages=pages_from_urls(self.sitemap_urls),
        )
        stats = self.state.stats
        stats.record_quality(content.quality_score)

        if content.quality_score < self.config.quality_threshold:
            self.log_activity(
                f"Quality {content.quality_score} below threshold {self.config.quality_threshold}, skipped",
                "warning",
                item.url,
            )
            return HistoryItem(
                url=item.url,
                action="skipped",
                quality_score=content.quality_score,
                word_count=content.word_count,
            )

        await self._save_content(item, content)
        history = HistoryItem(
            url=item.url,
            action="generated",
            quality_score=content.quality_score,
            word_count=content.word_count,
        )

        if self.config.auto_publish and self.publisher is not None:
            self._set_phase(EnginePhase.PUBLISHING, item.url)
            result = await self.publisher.publish(
                content.title,
                content.content,
                status=self.config.default_status,
                slug=content.slug,
                meta_description=content.meta_description,
                seo_title=content.seo_title,
                source_url=item.url,
            )
            if not result.get("success"):
                raise RuntimeError(result.get("error") or "Publishing failed")
            history.action = "published"
            history.wordpress_url = result.get("post_url")
            self.log_activity("Published to WordPress", "success", history.wordpress_url)
        else:
            self.log_activity(f"Generated {content.word_count} words", "success", item.url)

        stats.total_words_generated += content.word_count
        return history

    async def _process_next(self, now: datetime) -> Optional[HistoryItem]:
        self._roll_day(now)
        if not self.within_schedule(now):
            logger.debug("Outside active hours, not processing")
            return None
        if self.state.stats.published_today >= self.config.max_per_day:
            logger.debug("Daily limit of %d reached", self.config.max_per_day)
            return None

        item = self._pop_next()
        if item is None:
            return None

        stats = self.state.stats
        try:
            history = await self.process_item(item)
        except asyncio.CancelledError:
            self.state.queue.insert(0, item)
            raise
        except Exception as exc:
            message = str(exc) or type(exc).__name__
            if item.retry_count + 1 < self.config.retry_attempts:
                item.retry_count += 1
                self._enqueue(item)
                self.log_activity(
                    f"Attempt {item.retry_count} failed, will retry", "warning", f"{item.url}: {message}",
                )
                return None
            history = HistoryItem(url=item.url, action="error", error=message)
            stats.total_processed += 1
            stats.error_count += 1
            self._record_history(history)
            self.log_activity("Processing failed", "error", f"{item.url}: {message}")
            return history

        stats.total_processed += 1
        if history.action != "skipped":
            stats.success_count += 1
            stats.published_today += 1
        self._record_history(history)
        return history

    async def run_cycle(self) -> Optional[HistoryItem]:
        """Run one scan/process iteration. Returns the history entry written, if any."""
        now = self._clock()
        self.state.stats.cycle_count += 1
        self._seed_priority_urls()

        try:
            if not self.priority_only_mode and self.sitemap_urls and self.scan_due(now):
                await self.scan()
            return await self._process_next(now)
        finally:
            self.state.current_phase = EnginePhase.IDLE
            self.state.current_url = None
            self._notify()

    def _interval_seconds(self) -> float:
        return max(1.0, self.config.processing_interval_minutes * 60)

    async def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            await self._resume_event.wait()
            if self._stop_event.is_set():
                break
            try:
                await self.run_cycle()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.exception("God Mode cycle failed")
                self.log_activity("Cycle failed", "error", str(exc) or type(exc).__name__)
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self._interval_seconds())
            except asyncio.TimeoutError:
                pass

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def save_state(self, path: Union[str, Path]) -> None:
        """Write config, queue, history, activity and stats to *path* as JSON."""
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        data = self.snapshot()
        data["status"] = EngineStatus.IDLE.value
        tmp = path.with_suffix(".tmp")
        with open(tmp, "w", encoding="utf-8") as fh:
            json.dump(data, fh, indent=2, default=str)
        tmp.replace(path)
        logger.debug("God Mode state saved to %s", path)

    def load_state(self, path: Union[str, Path]) -> bool:
        """Restore state written by :meth:`save_state`. Returns False if unreadable."""
        try:
            with open(path, "r", encoding="utf-8") as fh:
                data = json.load(fh)
        except (FileNotFoundError, json.JSONDecodeError) as exc:
            logger.warning("Could not load God Mode state from %s: %s", path, exc)
            return False

        if isinstance(data.get("config"), dict):
            self.config = GodModeConfig.from_dict(data["config"])
        self.state.queue = [QueueItem.from_dict(q) for q in data.get("queue") or []]
        self.state.history = [HistoryItem.from_dict(h) for h in data.get("history") or []]
        self.state.activity_log = [
            ActivityItem.from_dict(a) for a in data.get("activity_log") or []
        ][:MAX_ACTIVITY_ENTRIES]
        self.state.stats = GodModeStats.from_dict(data.get("stats") or {})
        logger.info(
            "Loaded God Mode state: %d queued, %d history entries",
            len(self.state.queue), len(self.state.history),
        )
        return True
