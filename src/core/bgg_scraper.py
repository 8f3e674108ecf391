"""BoardGameGeek XML API v2 scraping module.

Default scrape routine for the queue: fetch one game's ``thing`` record,
parse it, and report whether usable details came back. Transient BGG
conditions (202 "still preparing", 5xx) raise so the queue's retry policy
decides when to try again.
"""

import asyncio
import html
import logging
from typing import Optional

import requests
from bs4 import BeautifulSoup, Tag

from src.core.config import settings

logger = logging.getLogger(__name__)

EXPANSION_TYPE = "boardgameexpansion"


class BggUnavailableError(RuntimeError):
    """BGG answered, but not with data yet (queued request or server error)."""


def to_int(v) -> Optional[int]:
    """Convert an attribute value to int, None for blanks and junk."""
    if v is None or v == "":
        return None
    try:
        return int(float(v))
    except (ValueError, TypeError):
        return None


def to_float(v) -> Optional[float]:
    if v is None or v == "":
        return None
    try:
        return float(v)
    except (ValueError, TypeError):
        return None


def build_thing_url(game_id: str) -> str:
    return f"{settings.BGG_API_BASE}/thing?id={game_id}&stats=1"


def fetch_xml(url: str) -> str:
    """GET an XML API v2 resource, with the bearer token when configured."""
    headers = {"Accept": "application/xml"}
    if settings.BGG_API_TOKEN:
        headers["Authorization"] = f"Bearer {settings.BGG_API_TOKEN}"

    res = requests.get(url, headers=headers, timeout=settings.SCRAPE_REQUEST_TIMEOUT)
    if res.status_code == 202:
        raise BggUnavailableError("BGG request queued (202), try again later")
    if res.status_code >= 500:
        raise BggUnavailableError(f"BGG server error ({res.status_code})")
    res.raise_for_status()
    return res.text


def _value(item: Tag, name: str) -> Optional[str]:
    el = item.find(name)
    return el.get("value") if el is not None else None


def _links(item: Tag, link_type: str) -> list[str]:
    return [
        link["value"]
        for link in item.find_all("link", attrs={"type": link_type})
        if link.get("value")
    ]


def parse_thing(xml: str, game_id: str) -> Optional[dict]:
    """Parse the ``<item id=game_id>`` element of a thing response."""
    soup = BeautifulSoup(xml, "lxml-xml")
    item = soup.find("item", attrs={"id": str(game_id)})
    if item is None:
        return None

    primary = item.find("name", attrs={"type": "primary"}) or item.find("name")
    image = item.find("image")
    thumbnail = item.find("thumbnail")
    description = item.find("description")
    average = item.find("average")

    image_url = image.get_text(strip=True) if image else None
    return {
        "id": str(game_id),
        "name": primary.get("value") if primary else None,
        "year_published": to_int(_value(item, "yearpublished")),
        "min_players": to_int(_value(item, "minplayers")),
        "max_players": to_int(_value(item, "maxplayers")),
        "min_playtime": to_int(_value(item, "minplaytime")),
        "max_playtime": to_int(_value(item, "maxplaytime")),
        "min_age": to_int(_value(item, "minage")),
        "image": image_url,
        "thumbnail": (thumbnail.get_text(strip=True) if thumbnail else None) or image_url,
        "description": html.unescape(description.get_text(strip=True)) if description else None,
        "rating": to_float(average.get("value")) if average else None,
        "categories": _links(item, "boardgamecategory"),
        "mechanics": _links(item, "boardgamemechanic"),
        "is_expansion": item.get("type") == EXPANSION_TYPE,
    }


def fetch_game_details(game_id: str) -> Optional[dict]:
    """Top-level convenience: fetch the thing record and parse it."""
    url = build_thing_url(game_id)
    logger.info("Fetching BGG details for %s from %s", game_id, url)
    xml = fetch_xml(url)
    return parse_thing(xml, game_id)


async def scrape_game(game_id: str) -> bool:
    """Scrape routine used by the queue: True when BGG returned details."""
    details = await asyncio.to_thread(fetch_game_details, game_id)
    if details is None:
        logger.error("No details found for %s", game_id)
        return False
    logger.info("Scraped %s (%s)", details["name"], game_id)
    return True
