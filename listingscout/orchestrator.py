"""Pipeline run orchestration.

One invocation processes one search config (by id) or every active one:

    started record -> credential check -> per search:
        expand terms, classify, collect tier-1 + registry sources
        per source (worker pool): fetch -> extract -> geo -> filters
        per outcome (orchestrator thread): ingest -> registry score
    -> terminal record

Source jobs may run on a bounded thread pool; the fetcher's pacer keeps
per-host request spacing, and everything that writes to the database
(ingestion, reliability scores, counters) happens on the orchestrator
thread as outcomes arrive, so no shared state is touched concurrently.
"""
import time
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FuturesTimeout, as_completed
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from . import crud, services
from .activity import ActivityRecorder, FAILURE, PARTIAL_SUCCESS, SUCCESS
from .classifier import OpenAIClassifier
from .config import MissingCredentialError, Settings
from .entities import CandidateListing, ExtractionContext, SourceTarget
from .extraction import ExtractionEngine
from .fetcher import ProxyFetcher, RetrievalError
from .filters import filter_by_price, filter_by_year, max_price
from .geo import GeoResolver, OpenCageGeocoder
from .sources import candidate_sources, primary_targets, record_outcome, search_urls, target_for_source
from .terms import expand_terms
from .utils import logger


class SearchSpecNotFound(LookupError):
    pass


@dataclass(frozen=True)
class SearchPlan:
    """Plain-value snapshot of a search config, safe to hand to workers."""
    search_config_id: int
    label: str
    terms: List[str]
    price_threshold: int
    price_multiplier: float
    max_price: int
    year_start: Optional[int] = None
    year_end: Optional[int] = None
    location: Optional[str] = None

    @classmethod
    def from_config(cls, config) -> "SearchPlan":
        multiplier = float(config.price_multiplier if config.price_multiplier is not None else 1.0)
        return cls(
            search_config_id=config.id,
            label=f"{config.brand} {config.model}".strip(),
            terms=expand_terms(config),
            price_threshold=config.price_threshold,
            price_multiplier=multiplier,
            max_price=max_price(config.price_threshold, multiplier),
            year_start=config.year_start,
            year_end=config.year_end,
            location=config.location,
        )


@dataclass
class SourceOutcome:
    target: SourceTarget
    candidates: List[CandidateListing] = field(default_factory=list)
    scraped: int = 0
    fetched_urls: int = 0
    strategy: Optional[str] = None
    synthetic_links: List[str] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def productive(self) -> bool:
        """Real (non-synthetic) listings were extracted."""
        return self.scraped > 0


@dataclass
class RunStats:
    sources_processed: int = 0
    successful_sources: int = 0
    inserted: int = 0
    duplicates: int = 0
    scraped: int = 0
    price_filtered: int = 0
    timed_out: bool = False
    errors: List[Dict] = field(default_factory=list)
    searches: List[Dict] = field(default_factory=list)
    synthetic_links: List[str] = field(default_factory=list)

    def status(self) -> str:
        if self.timed_out:
            return PARTIAL_SUCCESS if self.successful_sources else FAILURE
        if self.errors:
            return PARTIAL_SUCCESS
        return SUCCESS

    def metadata(self) -> Dict:
        return {
            "searches": self.searches,
            "total_scraped": self.scraped,
            "price_filtered": self.price_filtered,
            "duplicates": self.duplicates,
            "successful_sources": self.successful_sources,
            "errors": self.errors,
            "synthetic_links": self.synthetic_links,
            "timed_out": self.timed_out,
        }


@dataclass
class RunResult:
    success: bool
    status: str
    listings_found: int = 0
    sources_processed: int = 0
    execution_time_ms: int = 0
    error: Optional[str] = None

    def as_dict(self) -> Dict:
        if self.error:
            return {"error": self.error}
        return {
            "success": self.success,
            "listings_found": self.listings_found,
            "sources_processed": self.sources_processed,
            "execution_time_ms": self.execution_time_ms,
        }


class RunOrchestrator:
    def __init__(self, settings: Settings, session_factory, fetcher=None, geocoder=None,
                 classifier=None, engine: Optional[ExtractionEngine] = None,
                 primary: Optional[List[SourceTarget]] = None):
        self.settings = settings
        self.session_factory = session_factory
        self.fetcher = fetcher
        self.geocoder = geocoder
        if self.geocoder is None and settings.opencage_api_key:
            self.geocoder = OpenCageGeocoder(settings.opencage_api_key,
                                             min_interval=settings.geocode_interval_seconds)
        self.classifier = classifier or OpenAIClassifier(settings.openai_api_key, settings.openai_model)
        self.engine = engine or ExtractionEngine(enable_synthetic=settings.enable_synthetic_fallback,
                                                 max_items=settings.max_candidates_per_source)
        self.primary = primary if primary is not None else primary_targets(settings)
        self.activity = ActivityRecorder(session_factory, settings.activity_module_name)

    # -- entry point -----------------------------------------------------------

    def run(self, search_config_id: Optional[int] = None) -> RunResult:
        started = time.monotonic()
        scope = f"search config {search_config_id}" if search_config_id is not None else "all active search configs"
        self.activity.started(f"Starting marketplace search for {scope}", search_config_id)

        try:
            self.settings.require_retrieval_credential()
            if self.fetcher is None:
                self.fetcher = ProxyFetcher(self.settings)
        except MissingCredentialError as e:
            logger.error("Run aborted: %s", e)
            return self._failed(str(e), started, search_config_id)

        stats = RunStats()
        deadline = started + self.settings.run_timeout_seconds
        try:
            with self.session_factory() as db:
                configs = self._load_configs(db, search_config_id)
                logger.info("Processing %d search config(s)", len(configs))
                for config in configs:
                    if time.monotonic() >= deadline:
                        stats.timed_out = True
                        break
                    self._run_search(db, config, stats, deadline)
        except SearchSpecNotFound as e:
            return self._failed(str(e), started, search_config_id)
        except Exception as e:
            logger.exception("Run failed: %s", e)
            return self._failed(str(e), started, search_config_id, stats)

        elapsed = int((time.monotonic() - started) * 1000)
        status = stats.status()
        message = f"Found {stats.inserted} new listings from {stats.sources_processed} sources"
        if stats.timed_out:
            message += " (run timed out)"
        self.activity.finished(
            status,
            message,
            search_config_id=search_config_id,
            listings_found=stats.inserted,
            sources_processed=stats.sources_processed,
            execution_time_ms=elapsed,
            metadata=stats.metadata(),
        )
        logger.info("Run finished with %s: %s in %d ms", status, message, elapsed)
        return RunResult(status != FAILURE, status, stats.inserted, stats.sources_processed, elapsed)

    def _failed(self, error: str, started: float, search_config_id, stats: Optional[RunStats] = None) -> RunResult:
        elapsed = int((time.monotonic() - started) * 1000)
        stats = stats or RunStats()
        self.activity.finished(
            FAILURE,
            f"Run failed: {error}",
            search_config_id=search_config_id,
            listings_found=stats.inserted,
            sources_processed=stats.sources_processed,
            execution_time_ms=elapsed,
            error_details={"error": error},
            metadata=stats.metadata(),
        )
        return RunResult(False, FAILURE, stats.inserted, stats.sources_processed, elapsed, error=error)

    def _load_configs(self, db, search_config_id):
        if search_config_id is None:
            return crud.active_search_configs(db)
        config = crud.get_search_config(db, search_config_id)
        if config is None or not config.is_active:
            raise SearchSpecNotFound(f"Active search config not found: {search_config_id}")
        return [config]

    # -- per search ------------------------------------------------------------

    def _classify(self, config) -> Optional[str]:
        try:
            return self.classifier.classify(config)
        except Exception as e:
            logger.warning("Classifier raised, continuing uncategorized: %s", e)
            return None

    def _run_search(self, db, config, stats: RunStats, deadline: float):
        plan = SearchPlan.from_config(config)
        logger.info("Search %s: terms %s, max price %d", plan.label, plan.terms, plan.max_price)
        category = self._classify(config)

        registry = []
        if self.settings.max_registry_sources > 0:
            registry = [target_for_source(s) for s in
                        candidate_sources(db, category, limit=self.settings.max_registry_sources)]
        targets = list(self.primary) + registry
        resolver = GeoResolver.for_search(
            self.geocoder, plan.location,
            (self.settings.default_latitude, self.settings.default_longitude),
        )
        stats.searches.append({
            "search_config_id": plan.search_config_id,
            "search_terms": plan.terms,
            "category": category,
            "price_threshold": plan.price_threshold,
            "price_multiplier": plan.price_multiplier,
            "max_price": plan.max_price,
            "primary_sources": len(self.primary),
            "registry_sources": len(registry),
        })

        pool = ThreadPoolExecutor(max_workers=self.settings.max_workers, thread_name_prefix="source")
        futures = [pool.submit(self._process_source, target, plan, resolver, deadline) for target in targets]
        try:
            for future in as_completed(futures, timeout=max(0.0, deadline - time.monotonic())):
                self._absorb(db, plan, future.result(), stats)
        except FuturesTimeout:
            stats.timed_out = True
            logger.warning("Run timeout reached during %s; remaining sources cancelled", plan.label)
        finally:
            pool.shutdown(wait=not stats.timed_out, cancel_futures=True)

        try:
            crud.touch_last_run(db, plan.search_config_id)
        except Exception as e:
            db.rollback()
            logger.warning("Failed to update last run for search config %s: %s", plan.search_config_id, e)

    # -- per source (worker thread, no database access) ---------------------

    def _terms_for(self, target: SourceTarget, plan: SearchPlan) -> List[str]:
        # unknown sites get one term; every term costs up to three pattern guesses
        if target.search_template:
            return plan.terms[:self.settings.terms_per_source]
        return plan.terms[:1]

    def _process_source(self, target: SourceTarget, plan: SearchPlan, resolver: GeoResolver,
                        deadline: Optional[float] = None) -> SourceOutcome:
        outcome = SourceOutcome(target=target)
        try:
            self._collect(target, plan, outcome, deadline)
            candidates = resolver.resolve_all(outcome.candidates)
            candidates = filter_by_year(candidates, plan.year_start, plan.year_end)
            outcome.candidates = filter_by_price(candidates, plan.price_threshold, plan.price_multiplier)
        except Exception as e:
            logger.exception("Source %s failed: %s", target.name, e)
            outcome.candidates = []
            outcome.error = f"{type(e).__name__}: {e}"
        return outcome

    def _collect(self, target: SourceTarget, plan: SearchPlan, outcome: SourceOutcome,
                 deadline: Optional[float] = None):
        cap = self.settings.max_candidates_per_source
        found: Dict[str, CandidateListing] = {}
        failures = []
        stopped = False
        for term in self._terms_for(target, plan):
            for url in search_urls(target, term):
                if deadline is not None and time.monotonic() >= deadline:
                    stopped = True
                    break
                try:
                    raw = self.fetcher.fetch(url)
                except RetrievalError as e:
                    failures.append(str(e))
                    continue
                outcome.fetched_urls += 1
                result = self.engine.extract(raw, ExtractionContext(target, term, url, cap))
                if result.synthetic:
                    outcome.synthetic_links.extend(c.url for c in result.candidates)
                    continue
                for c in result.candidates:
                    found.setdefault(c.url, c)
                if result.candidates:
                    outcome.strategy = result.strategy
                    break
            if stopped or len(found) >= cap:
                break
        if stopped:
            logger.info("%s: run deadline reached, remaining requests skipped", target.name)

        outcome.candidates = list(found.values())[:cap]
        outcome.scraped = len(outcome.candidates)
        if outcome.scraped:
            logger.info("%s (tier %d): %d listings via %s", target.name, target.tier,
                        outcome.scraped, outcome.strategy)
        elif outcome.synthetic_links:
            logger.info("%s (tier %d): synthetic links only", target.name, target.tier)
        elif failures and outcome.fetched_urls == 0:
            outcome.error = failures[-1]
        elif stopped:
            outcome.error = "run timed out"
        else:
            outcome.error = "no listings extracted"

    # -- aggregation (orchestrator thread) --------------------------------------

    def _absorb(self, db, plan: SearchPlan, outcome: SourceOutcome, stats: RunStats):
        target = outcome.target
        stats.sources_processed += 1
        stats.scraped += outcome.scraped
        stats.price_filtered += len(outcome.candidates)
        stats.synthetic_links.extend(outcome.synthetic_links)

        if outcome.error:
            stats.errors.append({
                "search_config_id": plan.search_config_id,
                "source": target.name,
                "tier": target.tier,
                "url": target.url,
                "reason": outcome.error,
            })
            logger.info("Source %s failed: %s", target.name, outcome.error)
        else:
            stats.successful_sources += 1

        if outcome.candidates:
            ingest = services.ingest_candidates(db, plan.search_config_id, outcome.candidates)
            stats.inserted += ingest.inserted
            stats.duplicates += ingest.duplicates
            if ingest.errors:
                stats.errors.append({
                    "search_config_id": plan.search_config_id,
                    "source": target.name,
                    "tier": target.tier,
                    "url": target.url,
                    "reason": f"{ingest.errors} listing(s) failed to store",
                })

        if target.registry_backed:
            record_outcome(db, target.source_id, outcome.productive)
