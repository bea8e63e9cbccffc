"""Retrieval through the anti-blocking proxy.

Every marketplace request is routed through a ScraperAPI-style endpoint
(`SCRAPER_API_URL?api_key=...&url=<target>`). The proxy credential is
mandatory: without it nothing can be extracted, so constructing a fetcher
without one raises `MissingCredentialError`.

Requests are spaced by a `RequestPacer`. Each target host gets a minimum
interval between calls (longer for hosts that are aggressive about
automated access) and, when the pipeline runs with a single worker, every
call is also spaced globally so the run behaves exactly like a sequential
crawl with a fixed cool-down after each request.
"""
import threading
import time
from typing import Callable, Dict, Optional

import requests

from .config import MissingCredentialError, Settings
from .utils import host_of, logger, random_user_agent, retry


class RetrievalError(Exception):
    """A marketplace page could not be retrieved."""

    def __init__(self, url: str, reason: str):
        super().__init__(f"{reason} for {url}")
        self.url = url
        self.reason = reason


class HTTPStatusError(RetrievalError):
    def __init__(self, url: str, status_code: int):
        super().__init__(url, f"HTTP {status_code}")
        self.status_code = status_code


class TransportError(RetrievalError):
    pass


class RequestPacer:
    """Thread-safe per-host spacing of outbound requests.

    `wait(url)` reserves the next free slot for the URL's host under a lock,
    then sleeps outside the lock until that slot arrives.
    """

    def __init__(self, cooldown: float = 2.0, aggressive_cooldown: float = 3.0, aggressive_hosts=(),
                 global_interval: float = 0.0, clock: Callable[[], float] = time.monotonic,
                 sleep: Callable[[float], None] = time.sleep):
        self.cooldown = cooldown
        self.aggressive_cooldown = aggressive_cooldown
        self.aggressive_hosts = tuple(h.lower() for h in aggressive_hosts)
        self.global_interval = global_interval
        self._clock = clock
        self._sleep = sleep
        self._lock = threading.Lock()
        self._next_slot: Dict[str, float] = {}
        self._next_global = 0.0

    @classmethod
    def from_settings(cls, settings: Settings) -> "RequestPacer":
        return cls(
            cooldown=settings.fetch_cooldown_seconds,
            aggressive_cooldown=settings.aggressive_cooldown_seconds,
            aggressive_hosts=settings.aggressive_domains,
            global_interval=settings.global_fetch_interval,
        )

    def interval_for(self, host: str) -> float:
        for aggressive in self.aggressive_hosts:
            if host == aggressive or host.endswith("." + aggressive):
                return max(self.cooldown, self.aggressive_cooldown)
        return self.cooldown

    def wait(self, url: str) -> float:
        host = host_of(url)
        interval = self.interval_for(host)
        with self._lock:
            now = self._clock()
            slot = max(now, self._next_slot.get(host, 0.0), self._next_global)
            self._next_slot[host] = slot + interval
            self._next_global = slot + self.global_interval
        delay = slot - now
        if delay > 0:
            self._sleep(delay)
        return delay


class ProxyFetcher:
    """Fetches raw page text for a target URL through the proxy service."""

    def __init__(self, settings: Settings, session: Optional[requests.Session] = None,
                 pacer: Optional[RequestPacer] = None):
        if not settings.scraper_api_key:
            raise MissingCredentialError("SCRAPER_API_KEY not configured")
        self.api_key = settings.scraper_api_key
        self.proxy_url = settings.scraper_api_url
        self.timeout = settings.fetch_timeout_seconds
        self.session = session or requests.Session()
        self.pacer = pacer or RequestPacer.from_settings(settings)
        self._fetch_with_retry = retry(TransportError, tries=settings.fetch_retries, delay=1, backoff=2)(self._fetch_once)

    def fetch(self, url: str) -> str:
        """Return the body of `url` or raise a `RetrievalError`."""
        return self._fetch_with_retry(url)

    def _fetch_once(self, url: str) -> str:
        self.pacer.wait(url)
        params = {"api_key": self.api_key, "url": url}
        headers = {"User-Agent": random_user_agent()}
        try:
            response = self.session.get(self.proxy_url, params=params, headers=headers, timeout=self.timeout)
        except requests.exceptions.Timeout as e:
            raise TransportError(url, f"timeout: {e}") from e
        except requests.exceptions.RequestException as e:
            raise TransportError(url, f"transport error: {e}") from e
        if not 200 <= response.status_code < 300:
            logger.info("Proxy returned HTTP %s for %s", response.status_code, url)
            raise HTTPStatusError(url, response.status_code)
        logger.debug("Fetched %d chars from %s", len(response.text), url)
        return response.text
