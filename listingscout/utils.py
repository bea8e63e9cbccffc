"""Shared utilities: logging setup, retry decorator, URL helpers."""
import os
import logging
import random
import time
from functools import wraps
from urllib.parse import urlsplit, urlunsplit, parse_qsl, urlencode, urljoin

from dotenv import load_dotenv

load_dotenv()


def get_logger(name=__name__):
    level = os.getenv("LOG_LEVEL", "INFO").upper()
    logging.basicConfig(
        format="%(asctime)s | %(levelname)-7s | %(name)s | %(message)s",
        level=getattr(logging, level, logging.INFO)
    )
    return logging.getLogger(name)

logger = get_logger("listingscout")

def set_log_level(level):
    """Apply the configured level to the package logger."""
    logger.setLevel(getattr(logging, str(level).upper(), logging.INFO))

def retry(exceptions, tries=3, delay=1, backoff=2, logger=logger, sleep=time.sleep):
    def deco_retry(f):
        @wraps(f)
        def f_retry(*args, **kwargs):
            mtries, mdelay = tries, delay
            while mtries > 1:
                try:
                    return f(*args, **kwargs)
                except exceptions as e:
                    logger.warning("Retryable error: %s, retrying in %s sec", e, mdelay)
                    sleep(mdelay)
                    mtries -= 1
                    mdelay *= backoff
            return f(*args, **kwargs)
        return f_retry
    return deco_retry


USER_AGENTS = [
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64; rv:125.0) Gecko/20100101 Firefox/125.0",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/605.1.15 (KHTML, like Gecko) Version/17.4 Safari/605.1.15",
]

def random_user_agent():
    return random.choice(USER_AGENTS)


# query parameters that only carry tracking state
TRACKING_PARAMS = {"hash", "fbclid", "gclid", "ref", "_trkparms", "_trksid", "_from", "itmmeta", "amdata"}

def canonical_url(url, base=None):
    """Absolute URL with lower-cased host and no fragment or tracking params."""
    if not url:
        return url
    url = url.strip()
    if base:
        url = urljoin(base, url)
    parts = urlsplit(url)
    if not parts.scheme or not parts.netloc:
        return url
    query = [
        (k, v) for k, v in parse_qsl(parts.query, keep_blank_values=True)
        if k.lower() not in TRACKING_PARAMS and not k.lower().startswith("utm_")
    ]
    return urlunsplit((parts.scheme.lower(), parts.netloc.lower(), parts.path or "/", urlencode(query), ""))

def host_of(url):
    host = urlsplit(url).netloc.lower()
    if host.startswith("www."):
        host = host[4:]
    return host.split(":")[0]

def normalize_source_url(url):
    """Comparison key for source URLs (exclusion list matching)."""
    if not url:
        return ""
    parts = urlsplit(url.strip().lower())
    host = parts.netloc[4:] if parts.netloc.startswith("www.") else parts.netloc
    return (host + parts.path).rstrip("/")
