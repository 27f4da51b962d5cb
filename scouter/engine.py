"""
FILE DESCRIPTION: Crawl orchestration for one job.
KEY FUNCTIONS/CLASSES: CrawlEngine

FLOW: Seed start URL -> Loop { stop check -> next_batch (shallowest depth) -> parallel fetch ->
extract -> duplicate check -> persist page/links -> admit discovered URLs -> progress } ->
Post-processing -> CrawlSummary.
Page-level failures are recorded and never abort the crawl.
"""

from typing import Iterable, Optional

from scouter.core import logger
from scouter.errors import CrawlStopped, PersistenceError, ScouterError
from scouter.extractor import PageExtractor
from scouter.frontier import BLOCKED, DUPLICATE, ENQUEUED, INVALID, Frontier
from scouter.jobs.manager import JobManager
from scouter.jobs.models import LogType
from scouter.models import CrawlConfig, CrawlSummary, ExtractionResult, FetchResult, FrontierEntry, Link
from scouter.postprocess import Categorizer, PostProcessor
from scouter.processor import LinkUtility, ScopePolicy
from scouter.robots import RobotsCache
from scouter.scheduler import FetchScheduler
from scouter.storage.page_store import PageRecord, PageStore

REJECTION_OUTCOMES = ("duplicate", "too_deep", "out_of_scope", "blocked", "invalid")
COUNTERS_EVERY = 50


class CrawlEngine:

    def __init__(self, config: CrawlConfig, crawl_id: int, job_id: int, manager: JobManager,
                 page_store: PageStore, scheduler: Optional[FetchScheduler] = None,
                 robots: Optional[RobotsCache] = None, extractor: Optional[PageExtractor] = None,
                 categorizer: Optional[Categorizer] = None):
        self.config = config
        self.crawl_id = crawl_id
        self.job_id = job_id
        self.manager = manager
        self.page_store = page_store
        self.scope = ScopePolicy.for_config(config)
        # robots.txt is always read for the blocked flag, only enforced when respect.robots is set
        self.robots = robots if robots is not None else RobotsCache(user_agent=config.user_agent)
        self.frontier = Frontier(
            config.depth_max,
            self.scope,
            robots=self.robots if config.respect_robots else None,
            user_agent=config.user_agent,
            duplicate_threshold=config.duplicate_threshold,
        )
        self._owns_scheduler = scheduler is None
        self.scheduler = scheduler or FetchScheduler(config)
        self.extractor = extractor or PageExtractor()
        self.categorizer = categorizer

        self.processed = 0
        self.failed = 0
        self.duplicates = 0
        self.progress = 0
        self._context = {"context": f"job-{job_id}"}

    # -------------------------------
    # MAIN LOOP
    # -------------------------------
    def run(self) -> CrawlSummary:
        logger.info(f"[ENGINE] Crawl {self.crawl_id} started at {self.config.start_url} "
                    f"(depth {self.config.depth_max}, scope {', '.join(self.scope.patterns)})", extra=self._context)
        self._job_log(f"Crawl started: {self.config.start_url}")
        self._seed()

        status = "completed"
        try:
            while True:
                if self.manager.is_stop_requested(self.job_id):
                    raise CrawlStopped(f"Stop requested for job {self.job_id}")
                batch = self.frontier.next_batch(self.scheduler.batch_size)
                if not batch:
                    break
                for entry, result in self.scheduler.run_batch(batch):
                    self._process(entry, result)
        except CrawlStopped:
            status = "stopped"
            logger.warning(f"[ENGINE] Stop signal received after {self.processed} pages", extra=self._context)
        finally:
            if self._owns_scheduler:
                self.scheduler.close()

        self._update_counters()
        clusters = []
        if status == "completed":
            clusters = self._post_process()

        stats = self.frontier.get_stats()
        summary = CrawlSummary(
            crawl_id=self.crawl_id,
            status=status,
            processed=self.processed,
            failed=self.failed,
            duplicates=self.duplicates,
            rejected={k: stats[k] for k in REJECTION_OUTCOMES if stats.get(k)},
            duplicate_clusters=[c["page_ids"] for c in clusters],
        )
        logger.info(
            f"[ENGINE] Crawl {self.crawl_id} {status}: processed={summary.processed} failed={summary.failed} "
            f"duplicates={summary.duplicates} rejected={summary.rejected}",
            extra=self._context,
        )
        return summary

    def _seed(self):
        start = LinkUtility.normalize_url(self.config.start_url)
        outcome = self.frontier.admit(start, 0)
        if outcome == ENQUEUED:
            return
        logger.warning(f"[ENGINE] Start URL not admitted ({outcome}): {start}", extra=self._context)
        self._job_log(f"Start URL not crawled ({outcome}): {start}", LogType.WARNING)
        if outcome == BLOCKED:
            self._save_discovered([PageRecord(
                id=LinkUtility.url_hash(start), url=start, domain=LinkUtility.host_of(start),
                crawled=False, blocked=True,
            )])

    # -------------------------------
    # PER PAGE
    # -------------------------------
    def _process(self, entry: FrontierEntry, result: FetchResult):
        self.processed += 1
        if result.status == 0:
            self.failed += 1
            self._job_log(f"Fetch failed: {entry.url} ({result.error or 'no response'})", LogType.WARNING)
        elif result.error:
            self._job_log(f"{entry.url}: {result.error}", LogType.WARNING)

        extraction = self._extract(entry, result)
        record = self._record(entry, result, extraction)

        original = None
        if result.status == 200 and extraction.is_html:
            original = self.frontier.check_duplicate(entry.url, extraction.simhash)

        try:
            if original is not None:
                self.duplicates += 1
                record.duplicate_of = LinkUtility.url_hash(original)
                self._strip_content(record)
                self.page_store.save_page(self.crawl_id, record)
                logger.debug(f"[ENGINE] Duplicate of {original}: {entry.url}", extra=self._context)
            else:
                self.page_store.save_page(self.crawl_id, record)
                self._expand(entry, result, extraction)
        except PersistenceError as e:
            logger.error(f"[ENGINE] Could not persist {entry.url}: {e}", extra=self._context)
            self._job_log(f"Persistence error on {entry.url}: {e}", LogType.ERROR)

        self._report_progress()
        if self.processed % COUNTERS_EVERY == 0:
            self._update_counters()

    def _extract(self, entry: FrontierEntry, result: FetchResult) -> ExtractionResult:
        if not result.body:
            return ExtractionResult(is_html=False)
        try:
            return self.extractor.extract(entry.url, result, self.scope, self.config.extractors)
        except Exception as e:
            logger.exception(f"[ENGINE] Extraction failed for {entry.url}", extra=self._context)
            self._job_log(f"Extraction failed: {entry.url} ({e})", LogType.WARNING)
            return ExtractionResult(is_html=False)

    def _record(self, entry: FrontierEntry, result: FetchResult, extraction: ExtractionResult) -> PageRecord:
        blocked = not self.robots.is_allowed(entry.url, self.config.user_agent)
        canonical = extraction.is_canonical_for(entry.url)
        compliant = (not blocked and not extraction.noindex and canonical
                     and result.status == 200 and extraction.is_html)
        return PageRecord(
            id=entry.url_hash,
            url=entry.url,
            domain=LinkUtility.host_of(entry.url),
            depth=entry.depth,
            parent_id=LinkUtility.url_hash(entry.parent_url) if entry.parent_url else None,
            code=result.status,
            content_type=result.content_type,
            size=result.size,
            response_time=round(result.elapsed * 1000, 1),
            redirect_to=result.redirect_to,
            error=result.error,
            crawled=True,
            is_html=extraction.is_html,
            rendered=result.rendered,
            external=False,
            blocked=blocked,
            noindex=extraction.noindex,
            nofollow=extraction.nofollow,
            canonical=canonical,
            canonical_value=extraction.canonical,
            compliant=compliant,
            title=extraction.title,
            h1=extraction.h1,
            meta_desc=extraction.meta_description,
            h1_multiple=extraction.h1_multiple,
            headings_missing=extraction.headings_missing,
            schemas=list(extraction.schemas),
            extracts=dict(extraction.extracts),
            simhash=extraction.simhash,
            word_count=extraction.word_count,
        )

    @staticmethod
    def _strip_content(record: PageRecord):
        record.title = record.h1 = record.meta_desc = ""
        record.schemas = []
        record.extracts = {}
        record.word_count = 0

    def _expand(self, entry: FrontierEntry, result: FetchResult, extraction: ExtractionResult):
        """
        Redirects follow their target only, non-canonical pages (respect.canonical) their canonical only,
        other pages store every link and follow them unless the page is meta nofollow.
        """
        if result.redirect_to:
            target = LinkUtility.normalize_url(result.redirect_to)
            link = Link(url=target, external=self.scope.is_external(target))
            self.page_store.save_links(self.crawl_id, entry.url_hash, [link], link_type="redirect")
            self._discover(entry, [link], follow=True)
            return

        if self.config.respect_canonical and extraction.canonical and not extraction.is_canonical_for(entry.url):
            link = Link(url=extraction.canonical, external=self.scope.is_external(extraction.canonical))
            self.page_store.save_links(self.crawl_id, entry.url_hash, [link], link_type="canonical")
            self._discover(entry, [link], follow=True)
            return

        self.page_store.save_links(self.crawl_id, entry.url_hash, extraction.links)
        self._discover(entry, extraction.links, follow=not extraction.nofollow)

    def _discover(self, entry: FrontierEntry, links: Iterable[Link], follow: bool):
        depth = entry.depth + 1
        records = {}
        for link in links:
            blocked = False
            if follow:
                outcome = self.frontier.admit(link.url, depth, parent_url=entry.url)
                if outcome in (DUPLICATE, INVALID):
                    continue
                blocked = outcome == BLOCKED
            url_hash = LinkUtility.url_hash(link.url)
            records[url_hash] = PageRecord(
                id=url_hash,
                url=link.url,
                domain=LinkUtility.host_of(link.url),
                depth=depth,
                parent_id=entry.url_hash,
                crawled=False,
                external=link.external,
                blocked=blocked,
            )
        self._save_discovered(records.values())

    def _save_discovered(self, records: Iterable[PageRecord]):
        try:
            self.page_store.save_discovered(self.crawl_id, records)
        except PersistenceError as e:
            logger.error(f"[ENGINE] Could not persist discovered URLs: {e}", extra=self._context)
            self._job_log(f"Persistence error on discovered URLs: {e}", LogType.ERROR)

    # -------------------------------
    # PROGRESS / BOOKKEEPING
    # -------------------------------
    def estimate_progress(self) -> int:
        """processed / (processed + queued), capped at 99 until completion, never decreasing."""
        queued = self.frontier.pending()
        total = self.processed + queued
        estimate = int(self.processed * 100 / total) if total else 0
        self.progress = max(self.progress, min(99, estimate))
        return self.progress

    def _report_progress(self):
        previous = self.progress
        progress = self.estimate_progress()
        if progress != previous:
            try:
                self.manager.update_progress(self.job_id, progress)
            except PersistenceError as e:
                logger.error(f"[ENGINE] Could not record progress: {e}", extra=self._context)

    def _update_counters(self):
        try:
            self.page_store.update_crawl_counters(
                self.crawl_id, urls=self.frontier.get_stats()["seen"], crawled=self.processed
            )
        except PersistenceError as e:
            logger.error(f"[ENGINE] Could not update crawl counters: {e}", extra=self._context)

    def _post_process(self):
        processor = PostProcessor(
            self.page_store, self.crawl_id, LinkUtility.host_of(self.config.start_url), self.categorizer,
        )
        try:
            return processor.run()
        except ScouterError as e:
            logger.error(f"[ENGINE] Post-processing failed: {e}", extra=self._context)
            self._job_log(f"Post-processing failed: {e}", LogType.ERROR)
            return []

    def _job_log(self, message: str, log_type: LogType = LogType.INFO):
        try:
            self.manager.add_log(self.job_id, message, log_type)
        except PersistenceError as e:
            logger.error(f"[ENGINE] Could not append job log: {e}", extra=self._context)
