from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from urllib.parse import parse_qs, urlparse

from bs4 import BeautifulSoup

from registry_crawlers.models import Challenge, ChallengeKind
from registry_crawlers.normalizer import DEFAULT_TEMPLATES, LayoutTemplate, clean_text, match_template


class PageKind(Enum):
    NOT_FOUND = "NOT_FOUND"
    RATE_LIMITED = "RATE_LIMITED"
    CHALLENGE = "CHALLENGE"
    RESULTS = "RESULTS"
    UNKNOWN = "UNKNOWN"


@dataclass(frozen=True)
class PageMarkers:
    not_found_texts: tuple[str, ...] = (
        "no records found",
        "no record found",
        "no matching records",
        "no entities were found",
    )
    rate_limit_texts: tuple[str, ...] = (
        "too many requests",
        "rate limit exceeded",
        "you have been temporarily blocked",
    )
    recaptcha_selector: str = ".g-recaptcha[data-sitekey]"
    hcaptcha_selector: str = ".h-captcha[data-sitekey]"
    recaptcha_iframe_selector: str = "iframe[src*='recaptcha/api2/anchor']"
    image_selector: str = "img#captchaImage, img.captcha-image"


DEFAULT_MARKERS = PageMarkers()


def _soup(html: str) -> BeautifulSoup:
    soup = BeautifulSoup(html, "html.parser")
    for node in soup(["script", "style", "noscript"]):
        node.decompose()
    return soup


def _contains_any(text: str, needles: tuple[str, ...]) -> bool:
    return any(needle in text for needle in needles)


def _has_challenge(soup: BeautifulSoup, markers: PageMarkers) -> bool:
    selectors = (
        markers.recaptcha_selector,
        markers.hcaptcha_selector,
        markers.recaptcha_iframe_selector,
        markers.image_selector,
    )
    return any(soup.select_one(selector) is not None for selector in selectors)


def classify_page(
    html: str,
    markers: PageMarkers = DEFAULT_MARKERS,
    templates: tuple[LayoutTemplate, ...] = DEFAULT_TEMPLATES,
) -> PageKind:
    soup = _soup(html)
    # Results sections may carry their own "no records found" lines.
    if match_template(soup, templates) is not None:
        return PageKind.RESULTS

    text = clean_text(soup.get_text(" ")).casefold()
    title = clean_text(soup.title.get_text()).casefold() if soup.title else ""

    if _contains_any(text, markers.not_found_texts):
        return PageKind.NOT_FOUND
    if _contains_any(text, markers.rate_limit_texts) or _contains_any(title, markers.rate_limit_texts):
        return PageKind.RATE_LIMITED
    if _has_challenge(soup, markers):
        return PageKind.CHALLENGE
    return PageKind.UNKNOWN


def _data_uri_payload(src: str) -> str:
    if src.startswith("data:image") and ";base64," in src:
        return src.split(";base64,", 1)[1].strip()
    return ""


def extract_challenge(
    html: str,
    page_url: str,
    discovered_at: float,
    markers: PageMarkers = DEFAULT_MARKERS,
) -> Challenge | None:
    soup = _soup(html)

    widget = soup.select_one(markers.recaptcha_selector)
    if widget is not None:
        return Challenge(
            kind=ChallengeKind.RECAPTCHA_V2,
            page_url=page_url,
            discovered_at=discovered_at,
            site_key=str(widget.get("data-sitekey", "")).strip(),
        )

    widget = soup.select_one(markers.hcaptcha_selector)
    if widget is not None:
        return Challenge(
            kind=ChallengeKind.HCAPTCHA,
            page_url=page_url,
            discovered_at=discovered_at,
            site_key=str(widget.get("data-sitekey", "")).strip(),
        )

    frame = soup.select_one(markers.recaptcha_iframe_selector)
    if frame is not None:
        query = parse_qs(urlparse(str(frame.get("src", ""))).query)
        site_key = (query.get("k") or [""])[0]
        if site_key:
            return Challenge(
                kind=ChallengeKind.RECAPTCHA_V2,
                page_url=page_url,
                discovered_at=discovered_at,
                site_key=site_key,
            )

    image = soup.select_one(markers.image_selector)
    if image is not None:
        return Challenge(
            kind=ChallengeKind.IMAGE,
            page_url=page_url,
            discovered_at=discovered_at,
            image_b64=_data_uri_payload(str(image.get("src", ""))),
        )

    return None
