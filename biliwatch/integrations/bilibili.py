"""Bilibili web API client: uploader videos, user cards, and QR passport login."""

from __future__ import annotations

import hashlib
import io
import logging
import threading
import time
import urllib.parse
from pathlib import PurePosixPath
from typing import Any, Iterable, Mapping

import qrcode
import requests
from tenacity import Retrying, retry_if_result, stop_after_delay, stop_when_event_set, wait_fixed

from ..errors import ChallengeError, NoContentError, PlatformError
from . import AccountSummary, LoginChallenge, LoginResult, SessionCredential, VideoSnapshot

logger = logging.getLogger(__name__)

API_BASE = "https://api.bilibili.com"
PASSPORT_BASE = "https://passport.bilibili.com"
COOKIE_DOMAIN = ".bilibili.com"
USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36"
)
DEFAULT_HEADERS: Mapping[str, str] = {
    "User-Agent": USER_AGENT,
    "Referer": "https://www.bilibili.com/",
}

# Codes returned by the nav endpoint for anonymous sessions; wbi_img is still present.
NAV_ANONYMOUS_CODES: frozenset[int] = frozenset({-101})
# Risk-control rejections that usually mean the cached WBI keys went stale.
WBI_REJECTED_CODES: frozenset[int] = frozenset({-352, -403})

MIXIN_KEY_ENC_TAB: tuple[int, ...] = (
    46, 47, 18, 2, 53, 8, 23, 32, 15, 50, 10, 31, 58, 3, 45, 35,
    27, 43, 5, 49, 33, 9, 42, 19, 29, 28, 14, 39, 12, 38, 41, 13,
    37, 48, 7, 16, 24, 55, 40, 61, 26, 17, 0, 1, 60, 51, 30, 4,
    22, 25, 54, 21, 56, 59, 6, 63, 57, 62, 11, 36, 20, 34, 44, 52,
)
WBI_STRIPPED_CHARS = "!'()*"


def mixin_key(img_key: str, sub_key: str) -> str:
    """Scramble the two WBI keys into the 32 character signing salt."""
    raw = img_key + sub_key
    return "".join(raw[index] for index in MIXIN_KEY_ENC_TAB if index < len(raw))[:32]


def sign_wbi_params(params: Mapping[str, Any], salt: str, *, timestamp: int | None = None) -> dict[str, str]:
    """Return a copy of ``params`` with ``wts`` and ``w_rid`` attached."""
    signed: dict[str, str] = {key: str(value) for key, value in params.items()}
    signed["wts"] = str(int(time.time()) if timestamp is None else timestamp)
    ordered = {
        key: "".join(ch for ch in signed[key] if ch not in WBI_STRIPPED_CHARS)
        for key in sorted(signed)
    }
    query = urllib.parse.urlencode(ordered)
    ordered["w_rid"] = hashlib.md5((query + salt).encode("utf-8")).hexdigest()
    return ordered


def _key_from_url(url: str) -> str:
    return PurePosixPath(urllib.parse.urlparse(url).path).stem


def render_qr_png(url: str) -> bytes:
    qr = qrcode.QRCode(
        error_correction=qrcode.constants.ERROR_CORRECT_M,
        box_size=10,
        border=4,
    )
    qr.add_data(url)
    qr.make(fit=True)
    img = qr.make_image(fill_color="#000000", back_color="#FFFFFF").convert("RGB")
    buf = io.BytesIO()
    img.save(buf, format="PNG")
    return buf.getvalue()


def parse_cookie_string(token: str) -> Iterable[tuple[str, str]]:
    for pair in token.split(";"):
        name, sep, value = pair.strip().partition("=")
        if name and sep:
            yield name.strip(), value.strip()


class BilibiliClient:
    """Session-holding gateway to the Bilibili web API.

    The underlying ``requests.Session`` cookie jar is the live login session:
    every request path shares it, and the credential store mirrors it after
    each mutation.
    """

    def __init__(self, *, timeout: float = 10.0, session: requests.Session | None = None) -> None:
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.headers.update(DEFAULT_HEADERS)
        self._wbi_salt: str | None = None
        self._wbi_lock = threading.Lock()

    # ------------------------------------------------------------------ #
    # Session credential
    # ------------------------------------------------------------------ #

    def current_credential(self) -> SessionCredential:
        cookies: dict[str, str] = {}
        for cookie in self.session.cookies:
            if cookie.value is not None:
                cookies[cookie.name] = cookie.value
        token = "; ".join(f"{name}={cookies[name]}" for name in sorted(cookies))
        return SessionCredential(token)

    def set_credential(self, credential: SessionCredential) -> None:
        self.session.cookies.clear()
        for name, value in parse_cookie_string(credential.token):
            self.session.cookies.set(name, value, domain=COOKIE_DOMAIN, path="/")
        with self._wbi_lock:
            self._wbi_salt = None
        logger.debug("Bilibili session credential replaced (authenticated=%s)", credential.is_authenticated)

    # ------------------------------------------------------------------ #
    # Transport
    # ------------------------------------------------------------------ #

    def _get_json(
        self,
        url: str,
        params: Mapping[str, Any] | None = None,
        *,
        allow_codes: frozenset[int] = frozenset(),
    ) -> Any:
        try:
            response = self.session.get(url, params=params, timeout=self.timeout)
            response.raise_for_status()
            payload = response.json()
        except requests.RequestException as exc:
            raise PlatformError(f"request to {url} failed: {exc}") from exc
        except ValueError as exc:
            raise PlatformError(f"invalid JSON from {url}") from exc

        if not isinstance(payload, dict):
            raise PlatformError(f"unexpected payload from {url}")
        code = int(payload.get("code", 0))
        if code != 0 and code not in allow_codes:
            message = payload.get("message") or payload.get("msg") or "unknown error"
            raise PlatformError(f"bilibili API error {code}: {message}", code=code)
        return payload.get("data") or {}

    def _wbi_signing_salt(self, *, refresh: bool = False) -> str:
        with self._wbi_lock:
            if self._wbi_salt is not None and not refresh:
                return self._wbi_salt
        data = self._get_json(f"{API_BASE}/x/web-interface/nav", allow_codes=NAV_ANONYMOUS_CODES)
        wbi_img = data.get("wbi_img") or {}
        img_key = _key_from_url(wbi_img.get("img_url", ""))
        sub_key = _key_from_url(wbi_img.get("sub_url", ""))
        if not img_key or not sub_key:
            raise PlatformError("WBI keys missing from nav response")
        salt = mixin_key(img_key, sub_key)
        with self._wbi_lock:
            self._wbi_salt = salt
        logger.debug("Refreshed WBI signing keys")
        return salt

    def _get_wbi_json(self, url: str, params: Mapping[str, Any]) -> Any:
        try:
            return self._get_json(url, sign_wbi_params(params, self._wbi_signing_salt()))
        except PlatformError as exc:
            if exc.code not in WBI_REJECTED_CODES:
                raise
            logger.info("WBI request rejected with code %s; refreshing keys once", exc.code)
        return self._get_json(url, sign_wbi_params(params, self._wbi_signing_salt(refresh=True)))

    # ------------------------------------------------------------------ #
    # Uploader data
    # ------------------------------------------------------------------ #

    def latest_video(self, account_id: int) -> VideoSnapshot:
        data = self._get_wbi_json(
            f"{API_BASE}/x/space/wbi/arc/search",
            {"mid": account_id, "ps": 1, "pn": 1},
        )
        try:
            vlist = ((data.get("list") or {}).get("vlist")) or []
            if not vlist:
                raise NoContentError(account_id)
            item = vlist[0]
            return VideoSnapshot(
                id=str(item["bvid"]),
                engagement=int(item.get("play") or 0),
                title=str(item.get("title", "")),
                comment_count=int(item.get("comment") or 0),
                reaction_count=int(item.get("video_review") or 0),
            )
        except (ValueError, TypeError, KeyError, AttributeError) as exc:
            raise PlatformError(f"malformed video list for account {account_id}: {exc!r}") from exc

    def account_summary(self, account_id: int) -> AccountSummary:
        data = self._get_json(f"{API_BASE}/x/web-interface/card", {"mid": account_id})
        try:
            return AccountSummary(follower_count=int(data.get("follower") or 0))
        except (ValueError, TypeError, AttributeError) as exc:
            raise PlatformError(f"malformed user card for account {account_id}: {exc!r}") from exc

    # ------------------------------------------------------------------ #
    # QR login
    # ------------------------------------------------------------------ #

    def issue_login_challenge(self) -> LoginChallenge:
        try:
            data = self._get_json(f"{PASSPORT_BASE}/x/passport-login/web/qrcode/generate")
        except PlatformError as exc:
            raise ChallengeError(f"could not issue login QR code: {exc}", code=exc.code) from exc
        key = data.get("qrcode_key")
        url = data.get("url")
        if not key or not url:
            raise ChallengeError("login QR response missing qrcode_key/url")
        try:
            image = render_qr_png(url)
        except Exception as exc:
            raise ChallengeError(f"could not render login QR code: {exc}") from exc
        logger.info("Issued login QR challenge")
        return LoginChallenge(key=key, url=url, image=image)

    def poll_login(self, key: str) -> LoginResult:
        data = self._get_json(
            f"{PASSPORT_BASE}/x/passport-login/web/qrcode/poll",
            {"qrcode_key": key},
        )
        return LoginResult(code=int(data.get("code", -1)), message=str(data.get("message", "")))

    def await_login_result(
        self,
        key: str,
        *,
        timeout: float,
        poll_interval: float,
        cancel_event: threading.Event | None = None,
    ) -> LoginResult:
        """Poll the passport endpoint until the challenge is confirmed, rejected, or abandoned.

        Returns the last pending result when ``timeout`` elapses or the cancel
        event is set; transport failures raise :class:`PlatformError`.
        """
        event = cancel_event or threading.Event()
        retryer = Retrying(
            retry=retry_if_result(lambda result: result.pending),
            stop=stop_after_delay(timeout) | stop_when_event_set(event),
            wait=wait_fixed(poll_interval),
            sleep=event.wait,
            retry_error_callback=lambda state: state.outcome.result(),
            reraise=True,
        )
        result = retryer(self.poll_login, key)
        logger.info("Login challenge finished with code %s", result.code)
        return result

    def close(self) -> None:
        self.session.close()
