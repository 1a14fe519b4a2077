"""
llmstash Store - Library Sync

Ingests the public model library (``/library?sort=newest``) into
``model_info``. Each listing entry carries a raw digest (sha256 of its
markup); entries whose digest is unchanged are skipped, the others get
their detail page (summary, readme) and tags page fetched.

Tags pages are kept raw in ``library_raw_data`` so a pull can look up the
context window and input type of the exact tag it installs.
"""

from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Tuple
from urllib.parse import urljoin

import requests
from bs4 import BeautifulSoup

from ..utils.retry import RetryPolicy, retry_call
from .config_entries import ConfigKey
from .download_service import USER_AGENT, check_response, is_transient, network_error
from .errors import NetworkError, NotFoundError
from .models import ModelInfoRecord, ModelTag, ProgressStatus

logger = logging.getLogger(__name__)

DEFAULT_LIBRARY = "https://ollama.com"


def text_digest(text: str) -> str:
    return "sha256:" + hashlib.sha256(text.encode("utf-8")).hexdigest()


# =============================================================================
# Parsing
# =============================================================================

def _text(el, selector: str) -> Optional[str]:
    found = el.select_one(selector)
    return found.get_text(strip=True) if found is not None else None


def parse_library(html: str) -> List[ModelInfoRecord]:
    """
    Parse the library listing page.

    Entries missing a title, introduction or any counter are skipped.
    Returned oldest first (the page lists newest first).
    """
    soup = BeautifulSoup(html, "html.parser")
    records = []
    for el in soup.select("div#repo > ul li a"):
        title_el = el.select_one("div [x-test-model-title]")
        if title_el is None or not title_el.get("title"):
            continue
        introduction = _text(title_el, "p")
        pull_count = _text(el, "span [x-test-pull-count]")
        tag_count = _text(el, "span [x-test-tag-count]")
        updated_time = _text(el, "span [x-test-updated]")
        if None in (introduction, pull_count, tag_count, updated_time):
            continue
        records.append(
            ModelInfoRecord(
                title=title_el["title"],
                href=el.get("href", ""),
                raw_digest=text_digest(str(el)),
                introduction=introduction,
                pull_count=pull_count,
                tag_count=tag_count,
                updated_time=updated_time,
            )
        )
    records.reverse()
    return records


def parse_summary(html: str) -> Tuple[str, str]:
    """(summary, readme) from a model detail page; empty when absent."""
    soup = BeautifulSoup(html, "html.parser")
    return _text(soup, "#summary-content") or "", _text(soup, "#readme #display") or ""


def parse_tags(html: str) -> List[ModelTag]:
    """Rows of a model's tags page. Incomplete rows are skipped."""
    soup = BeautifulSoup(html, "html.parser")
    tags = []
    for row in soup.select("body section > div > div > div"):
        link = row.select_one("div > span > a")
        input_el = row.select_one("div > div.col-span-2")
        paragraphs = row.select("div > p")
        hash_el = row.select_one("div > div > span.font-mono")
        if link is None or input_el is None or hash_el is None or len(paragraphs) < 2:
            continue
        tags.append(
            ModelTag(
                name=link.get_text(strip=True),
                href=link.get("href", ""),
                size=paragraphs[0].get_text(strip=True),
                context=paragraphs[1].get_text(strip=True),
                input=input_el.get_text(strip=True),
                hash=hash_el.get_text(strip=True),
            )
        )
    return tags


# =============================================================================
# Sync
# =============================================================================

@dataclass
class LibrarySyncReport:
    """Summary of one library sync run."""
    total: int = 0
    inserted: int = 0
    updated: int = 0
    unchanged: int = 0
    failed: List[str] = field(default_factory=list)
    skipped: bool = False

    @property
    def completed(self) -> bool:
        return not self.failed


class LibrarySync:
    """Scrapes the model library into the metadata store."""

    def __init__(
        self,
        metadata,
        library: str = DEFAULT_LIBRARY,
        timeout: tuple = (15, 60),
        proxies: Optional[Dict[str, str]] = None,
        retry_policy: Optional[RetryPolicy] = None,
        sleep: Optional[Callable[[float], None]] = None,
    ):
        self.metadata = metadata
        self.library = library.rstrip("/")
        self.timeout = timeout
        self.retry_policy = retry_policy or RetryPolicy()
        self._sleep = sleep

        self.session = requests.Session()
        self.session.headers.update({"User-Agent": USER_AGENT, "Accept": "text/html"})
        if proxies:
            self.session.proxies.update(proxies)

    @property
    def library_url(self) -> str:
        return f"{self.library}/library?sort=newest"

    def page_url(self, href: str) -> str:
        return urljoin(self.library + "/", href)

    def tags_url(self, href: str) -> str:
        return self.page_url(href).rstrip("/") + "/tags"

    def _get_text(self, url: str) -> str:
        def attempt() -> str:
            try:
                response = self.session.get(url, timeout=self.timeout)
                check_response(response, url)
            except requests.RequestException as e:
                raise network_error(e, url) from e
            return response.text

        kwargs = {"sleep": self._sleep} if self._sleep else {}
        return retry_call(attempt, self.retry_policy, is_transient, label=url, **kwargs).value

    def sync(self, refresh: bool = False) -> LibrarySyncReport:
        """
        Fetch the library listing and upsert every changed entry.

        Args:
            refresh: Run even if a previous sync already completed

        Returns:
            LibrarySyncReport

        Raises:
            NetworkError / NotFoundError: The listing page itself failed.
                Failures of single entries are collected in the report.
        """
        report = LibrarySyncReport()
        marker = ConfigKey.INSERT_MODEL_INFO_COMPLETED
        status = self.metadata.get_status(marker)
        if status == ProgressStatus.COMPLETED and not refresh:
            logger.info("[LibrarySync] Library already synced, skipping")
            report.skipped = True
            return report
        if status != ProgressStatus.COMPLETED:
            self.metadata.advance_status(marker, ProgressStatus.IN_PROGRESS)

        html = self._get_text(self.library_url)
        self.metadata.put_raw(self.library_url, text_digest(html), html)
        entries = parse_library(html)
        report.total = len(entries)
        logger.info(f"[LibrarySync] Found {len(entries)} model(s) in library")

        for entry in entries:
            existing = self.metadata.find_model_info(entry.title, entry.href)
            if existing is not None and existing.raw_digest == entry.raw_digest:
                report.unchanged += 1
                continue
            try:
                summary, readme = parse_summary(self._get_text(self.page_url(entry.href)))
                tags_url = self.tags_url(entry.href)
                tags_html = self._get_text(tags_url)
            except (NetworkError, NotFoundError) as e:
                logger.warning(f"[LibrarySync] Failed to fetch {entry.title}: {e}")
                report.failed.append(entry.title)
                continue

            with self.metadata.transaction():
                self.metadata.put_raw(tags_url, text_digest(tags_html), tags_html)
                _, changed = self.metadata.upsert_model_info(
                    entry.model_copy(update={"summary": summary, "readme": readme})
                )
            if existing is None:
                report.inserted += 1
            elif changed:
                report.updated += 1
            else:
                report.unchanged += 1

        if report.completed:
            self.metadata.advance_status(marker, ProgressStatus.COMPLETED)
        else:
            logger.warning(
                f"[LibrarySync] {len(report.failed)} model(s) failed, sync stays in progress"
            )
        return report

    # =========================================================================
    # Tags
    # =========================================================================

    def tags(self, name: str) -> List[ModelTag]:
        """Cached tag listing of a model family (empty if never synced)."""
        info = self.metadata.find_model_info(name)
        if info is None:
            return []
        cached = self.metadata.get_raw(self.tags_url(info.href))
        if cached is None:
            return []
        return parse_tags(cached.raw_data)

    def lookup_tag(self, name: str, category: str) -> Optional[ModelTag]:
        """Find ``name:category`` in the cached tags page."""
        for tag in self.tags(name):
            if tag.name in (f"{name}:{category}", category):
                return tag
        return None
