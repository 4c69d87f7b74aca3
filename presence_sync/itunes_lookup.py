# presence_sync/itunes_lookup.py
import logging
import re
from typing import List, Optional

import requests

from .errors import ArtworkLookupError, ArtworkRateLimited

logger = logging.getLogger(__name__)

ITUNES_SEARCH_URL = "https://itunes.apple.com/search"
MB_RELEASE_SEARCH_URL = "https://musicbrainz.org/ws/2/release"
CAA_FRONT_URL = "https://coverartarchive.org/release/{mbid}/front-500"
USER_AGENT = "RichMusicPresence/2.0 (https://github.com/kovaaaaaa/rich-music-presence)"

ARTWORK_SIZE = "512x512"
MIN_ALBUM_SCORE = 5
MIN_MB_SCORE = 90

# Status codes each provider uses to say "slow down".
_RATE_LIMIT_STATUS = {
    "itunes": {429, 403},
    "musicbrainz": {429, 503},
}


def _normalize(value: str) -> str:
    value = value.lower()
    value = value.replace("&", "and")
    value = re.sub(r"\b(feat|featuring|ft)\b\.?", "", value)
    value = re.sub(r"[^a-z0-9]+", " ", value)
    return " ".join(value.split()).strip()


def _normalize_album(value: str) -> str:
    value = value.lower()
    # Drop common edition/format markers in parentheses/brackets.
    value = re.sub(r"[\(\[].*?[\)\]]", " ", value)
    value = re.sub(r"\b(deluxe|expanded|remaster(ed)?|edition|version|clean|explicit)\b", " ", value)
    return _normalize(value)


def _upscale(artwork: str) -> str:
    return re.sub(r"/\d+x\d+", f"/{ARTWORK_SIZE}", artwork)


def score_album(item: dict, artist_norm: str, album_norm: str) -> int:
    a_name = _normalize(item.get("artistName", "") or "")
    c_name = _normalize_album(item.get("collectionName", "") or "")
    score = 0
    if album_norm and c_name:
        if c_name == album_norm:
            score += 8
        elif album_norm in c_name or c_name in album_norm:
            score += 4
    if a_name and artist_norm:
        if a_name == artist_norm:
            score += 4
        elif artist_norm in a_name or a_name in artist_norm:
            score += 2
        else:
            score -= 2
    if item.get("artworkUrl100") or item.get("artworkUrl60"):
        score += 1
    return score


def pick_best_album(results: List[dict], artist: str, album: str) -> Optional[dict]:
    artist_norm = _normalize(artist or "")
    album_norm = _normalize_album(album or "")
    if not results:
        return None
    scored = [(item, score_album(item, artist_norm, album_norm)) for item in results]
    scored.sort(key=lambda x: x[1], reverse=True)
    best, best_score = scored[0]
    # Artist-only lookups can't earn album points; accept an exact artist match.
    threshold = MIN_ALBUM_SCORE if album_norm else 4
    if best_score < threshold:
        return None
    return best


class ArtworkSearch:
    """
    Blocking artwork search: iTunes album search first, then MusicBrainz
    release search pointing at the Cover Art Archive front image.

    Returns a URL or None. Raises ArtworkRateLimited when a provider asks us
    to slow down and ArtworkLookupError when every provider failed.
    """

    def __init__(self, session: Optional[requests.Session] = None, timeout: float = 4.0):
        self.timeout = timeout
        self._http = session or requests.Session()
        self._http.headers.setdefault("User-Agent", USER_AGENT)

    def __call__(self, artist: str, album: str) -> Optional[str]:
        return self.search(artist, album)

    def close(self) -> None:
        self._http.close()

    def _get(self, provider: str, url: str, params: dict) -> dict:
        try:
            r = self._http.get(url, params=params, timeout=self.timeout)
        except requests.RequestException as e:
            raise ArtworkLookupError(f"{provider} request failed: {e}") from e
        if r.status_code in _RATE_LIMIT_STATUS[provider]:
            raise ArtworkRateLimited(provider, r.status_code)
        try:
            r.raise_for_status()
            return r.json()
        except requests.HTTPError as e:
            raise ArtworkLookupError(f"{provider} returned HTTP {r.status_code}") from e
        except ValueError as e:
            raise ArtworkLookupError(f"{provider} returned invalid JSON") from e

    def search_itunes(self, artist: str, album: str) -> Optional[str]:
        term = f"{artist} {album}".strip()
        params = {"term": term, "media": "music", "entity": "album", "limit": 10}
        data = self._get("itunes", ITUNES_SEARCH_URL, params)
        best = pick_best_album(data.get("results", []) or [], artist, album)
        if not best:
            return None
        artwork = best.get("artworkUrl100") or best.get("artworkUrl60")
        if not artwork:
            return None
        logger.debug(
            "itunes album match: '%s' by '%s'", best.get("collectionName"), best.get("artistName")
        )
        return _upscale(artwork)

    def search_musicbrainz(self, artist: str, album: str) -> Optional[str]:
        if not album:
            return None
        params = {
            "query": f'artist:"{artist}" AND release:"{album}"',
            "fmt": "json",
            "limit": 1,
        }
        data = self._get("musicbrainz", MB_RELEASE_SEARCH_URL, params)
        releases = data.get("releases", []) or []
        if not releases:
            return None
        release = releases[0]
        try:
            score = int(release.get("score", 0))
        except (TypeError, ValueError):
            score = 0
        mbid = release.get("id")
        if not mbid or score < MIN_MB_SCORE:
            return None
        logger.debug("musicbrainz match: '%s' (score %d)", release.get("title"), score)
        return CAA_FRONT_URL.format(mbid=mbid)

    def search(self, artist: str, album: str) -> Optional[str]:
        artist = (artist or "").strip()
        album = (album or "").strip()
        if not artist and not album:
            return None

        errors = []
        for provider in (self.search_itunes, self.search_musicbrainz):
            try:
                url = provider(artist, album)
            except ArtworkRateLimited:
                raise
            except ArtworkLookupError as e:
                logger.debug("%s", e)
                errors.append(e)
                continue
            if url:
                return url

        if len(errors) == 2:
            raise ArtworkLookupError("; ".join(str(e) for e in errors))
        return None
