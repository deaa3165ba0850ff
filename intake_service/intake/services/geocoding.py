"""
ZIP code to city/state lookup.
"""
import logging
from typing import Optional

import httpx
from django.conf import settings
from django.core.cache import cache

logger = logging.getLogger(__name__)

CACHE_PREFIX = 'geocode:zip:'
# Cached marker for ZIPs the service does not know, so they are not re-queried.
NOT_FOUND = 'not-found'


class ZipGeocoder:
    """
    Resolves US ZIP codes through the zippopotam.us API.

    ``lookup`` never raises: every failure is logged and returns None.
    """

    def __init__(self, url_template: Optional[str] = None, timeout: Optional[float] = None,
                 cache_ttl: Optional[int] = None):
        self.url_template = url_template or settings.GEOCODING_API_URL
        self.timeout = timeout if timeout is not None else settings.GEOCODING_TIMEOUT
        self.cache_ttl = cache_ttl if cache_ttl is not None else settings.GEOCODING_CACHE_TTL

    def lookup(self, zip_code: str) -> Optional[dict]:
        zip5 = str(zip_code or '').strip()[:5]
        if len(zip5) != 5 or not zip5.isdigit():
            return None

        cache_key = f"{CACHE_PREFIX}{zip5}"
        cached = cache.get(cache_key)
        if cached == NOT_FOUND:
            return None
        if cached:
            return cached

        url = self.url_template.format(zip=zip5)
        try:
            response = httpx.get(url, timeout=self.timeout)
        except httpx.HTTPError as e:
            logger.warning(f"Geocoding request failed for {zip5}: {e}")
            return None

        if response.status_code == 404:
            logger.info(f"Geocoding: ZIP {zip5} not found")
            cache.set(cache_key, NOT_FOUND, self.cache_ttl)
            return None
        if response.status_code != 200:
            logger.warning(f"Geocoding returned {response.status_code} for {zip5}")
            return None

        try:
            place = response.json()['places'][0]
            result = {
                'city': place['place name'],
                'state': place['state abbreviation'],
            }
        except (ValueError, KeyError, IndexError, TypeError) as e:
            logger.warning(f"Malformed geocoding response for {zip5}: {e}")
            return None

        cache.set(cache_key, result, self.cache_ttl)
        logger.debug(f"Geocoded {zip5} -> {result['city']}, {result['state']}")
        return result
