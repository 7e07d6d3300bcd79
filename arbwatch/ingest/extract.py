"""Turn a retailer product page into :class:`ListingFacts`.

Every lookup is best effort: a selector that matches nothing (or is invalid)
yields an empty value and never raises. Callers decide what to do with a
facts record that has no price.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any, Iterable
from urllib.parse import urljoin, urlparse

from bs4 import BeautifulSoup
from bs4.element import Tag

from arbwatch.config import CrawlerSettings, SiteProfile
from arbwatch.ingest.models import ListingFacts

logger = logging.getLogger(__name__)

PRICE_TOKEN_RE = re.compile(r"\d+(?:\.\d+)?")
NON_PRICE_CHARS_RE = re.compile(r"[^\d.]")

OUT_OF_STOCK_PHRASES = (
    "out of stock",
    "sold out",
    "unavailable",
    "not available",
    "no longer available",
    "out-of-stock",
    "currently unavailable",
)
IN_STOCK_PHRASES = (
    "in stock",
    "available",
    "add to cart",
    "buy now",
    "in-stock",
    "ships",
)

SCHEMA_AVAILABILITY = {
    "instock": "in stock",
    "limitedavailability": "in stock",
    "onlineonly": "in stock",
    "instoreonly": "in stock",
    "preorder": "unavailable",
    "outofstock": "out of stock",
    "soldout": "sold out",
    "discontinued": "no longer available",
}


def parse_price(text: str | None) -> float | None:
    """``"$1,234.56 (list)"`` -> ``1234.56``; ``None`` when there are no digits."""
    if not text:
        return None
    cleaned = NON_PRICE_CHARS_RE.sub("", text)
    match = PRICE_TOKEN_RE.search(cleaned)
    if not match:
        return None
    return float(match.group(0))


def classify_stock(text: str | None) -> bool:
    """True for in stock. Out-of-stock phrases win; anything unrecognised is out of stock."""
    if not text:
        return False
    lowered = text.lower()
    if any(phrase in lowered for phrase in OUT_OF_STOCK_PHRASES):
        return False
    return any(phrase in lowered for phrase in IN_STOCK_PHRASES)


def match_site(url: str, target_sites: Iterable[str]) -> str | None:
    """Return the allow-listed domain the URL's host ends with, if any."""
    host = (urlparse(url).hostname or "").lower()
    if not host:
        return None
    for site in target_sites:
        if host == site or host.endswith("." + site):
            return site
    return None


def resolve_profile(url: str, settings: CrawlerSettings) -> tuple[str, SiteProfile]:
    site = match_site(url, settings.target_sites)
    if site and site in settings.profiles:
        return site, settings.profiles[site]
    return site or (urlparse(url).hostname or "default"), settings.profiles["default"]


def parse_html(page: str | BeautifulSoup) -> BeautifulSoup:
    if isinstance(page, BeautifulSoup):
        return page
    return BeautifulSoup(page, "html.parser")


def extract(
    page: str | BeautifulSoup,
    profile: SiteProfile,
    *,
    url: str = "",
    site: str = "default",
) -> ListingFacts:
    soup = parse_html(page)
    structured = _structured_product(soup)

    price_el = _select(soup, profile.price)
    price_text = _price_text(price_el)
    price = parse_price(price_text)
    if price is None:
        price = _structured_price(soup, structured)

    stock_text = _text(_select(soup, profile.stock))
    if not stock_text:
        stock_text = _structured_availability(structured)

    image = _image_src(_select(soup, profile.image))
    if not image:
        image = _meta(soup, "og:image")
    if image and url:
        image = urljoin(url, image)

    title = _text(_select(soup, profile.title)) or str(structured.get("name") or "").strip()

    return ListingFacts(
        site=site,
        listing_url=url,
        title=title,
        price=price,
        in_stock=classify_stock(stock_text),
        stock_text=stock_text,
        color=_text(_select(soup, profile.color)),
        size=_text(_select(soup, profile.size)),
        image_url=image,
    )


def looks_like_product_page(page: str | BeautifulSoup, profile: SiteProfile) -> bool:
    """Product pages carry a product schema or a price where the profile expects one."""
    soup = parse_html(page)
    if _meta(soup, "og:type").lower() == "product" or _structured_product(soup):
        return True
    return parse_price(_price_text(_select(soup, profile.price))) is not None


def _select(soup: BeautifulSoup, selector: str) -> Tag | None:
    if not selector:
        return None
    try:
        return soup.select_one(selector)
    except Exception as exc:  # invalid selectors count as a miss
        logger.debug("Selector %r failed: %s", selector, exc)
        return None


def _text(element: Tag | None) -> str:
    if element is None:
        return ""
    return " ".join(element.get_text(" ", strip=True).split())


def _price_text(element: Tag | None) -> str:
    if element is None:
        return ""
    content = element.get("content")
    if isinstance(content, str) and content.strip():
        return content
    return _text(element)


def _image_src(element: Tag | None) -> str:
    if element is None:
        return ""
    if element.name != "img":
        element = element.find("img") or element
    for attr in ("src", "data-src"):
        value = element.get(attr)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return ""


def _meta(soup: BeautifulSoup, prop: str) -> str:
    tag = soup.find("meta", attrs={"property": prop}) or soup.find("meta", attrs={"name": prop})
    if tag is None:
        return ""
    content = tag.get("content")
    return content.strip() if isinstance(content, str) else ""


def _structured_product(soup: BeautifulSoup) -> dict[str, Any]:
    for script in soup.find_all("script", attrs={"type": "application/ld+json"}):
        try:
            data = json.loads(script.string or "")
        except (TypeError, ValueError):
            continue
        for item in _walk_ld(data):
            kind = item.get("@type")
            kinds = kind if isinstance(kind, list) else [kind]
            if "Product" in kinds:
                return item
    return {}


def _walk_ld(data: Any) -> Iterable[dict[str, Any]]:
    if isinstance(data, list):
        for item in data:
            yield from _walk_ld(item)
    elif isinstance(data, dict):
        yield data
        if "@graph" in data:
            yield from _walk_ld(data["@graph"])


def _offer(structured: dict[str, Any]) -> dict[str, Any]:
    offers = structured.get("offers")
    if isinstance(offers, list):
        offers = offers[0] if offers else {}
    return offers if isinstance(offers, dict) else {}


def _structured_price(soup: BeautifulSoup, structured: dict[str, Any]) -> float | None:
    offer = _offer(structured)
    for key in ("price", "lowPrice"):
        if offer.get(key) is not None:
            return parse_price(str(offer[key]))
    return parse_price(_meta(soup, "product:price:amount"))


def _structured_availability(structured: dict[str, Any]) -> str:
    availability = str(_offer(structured).get("availability") or "")
    if not availability:
        return ""
    key = availability.rstrip("/").rsplit("/", 1)[-1].lower()
    return SCHEMA_AVAILABILITY.get(key, "")
