"""
Gift Catalog: known gift metadata, used as the second tier of gift name
resolution and as a fallback for the diamond value.

The catalog is refreshed from the connector's list of available gifts once
a room is connected, and can be seeded from a YAML or JSON file.
"""

import json
import yaml
import structlog
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterable, Optional, Protocol

from .resolvers import coerce_int

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class GiftInfo:
    id: str
    name: str
    diamond_count: int = 0
    image_url: Optional[str] = None


class GiftCatalogLookup(Protocol):
    def lookup(self, gift_id: Any) -> Optional[GiftInfo]: ...


class GiftCatalog:
    """In-memory gift catalog keyed by gift id (compared as strings)."""

    def __init__(self, gifts: Iterable[dict] = ()):
        self._gifts: dict[str, GiftInfo] = {}
        if gifts:
            self.update(gifts)

    def lookup(self, gift_id: Any) -> Optional[GiftInfo]:
        if gift_id is None or gift_id == "":
            return None
        return self._gifts.get(str(gift_id))

    def update(self, gifts: Iterable[dict]) -> int:
        """
        Merge gift records into the catalog, deduplicated by id.
        Returns the number of catalog entries afterwards.
        """
        added = 0
        changed = 0
        for raw in gifts:
            info = self._to_info(raw)
            if info is None:
                continue
            existing = self._gifts.get(info.id)
            if existing is None:
                added += 1
            elif existing != info:
                changed += 1
            self._gifts[info.id] = info

        logger.info(
            "gift_catalog_updated",
            entries=len(self._gifts),
            added=added,
            changed=changed,
        )
        return len(self._gifts)

    def load(self, path: str | Path) -> int:
        """Seed the catalog from a YAML or JSON list of gift records."""
        path = Path(path)
        if not path.exists():
            logger.warning("gift_catalog_not_found", path=str(path))
            return len(self._gifts)

        with open(path, "r", encoding="utf-8") as f:
            if path.suffix == ".json":
                records = json.load(f)
            else:
                records = yaml.safe_load(f)

        if isinstance(records, dict):
            records = records.get("gifts", [])
        return self.update(records or [])

    def entries(self) -> list[GiftInfo]:
        return list(self._gifts.values())

    def __len__(self) -> int:
        return len(self._gifts)

    @staticmethod
    def _to_info(raw: Any) -> Optional[GiftInfo]:
        if not isinstance(raw, dict):
            return None
        gift_id = raw.get("id", raw.get("giftId"))
        if gift_id is None or gift_id == "":
            return None

        image = raw.get("image") if isinstance(raw.get("image"), dict) else {}
        url_list = image.get("url_list")
        image_url = (
            (url_list[0] if isinstance(url_list, list) and url_list else None)
            or image.get("url")
            or raw.get("image_url")
        )
        raw_diamonds = raw.get("diamond_count") or raw.get("diamondCount")
        diamonds = coerce_int(raw_diamonds)
        if raw_diamonds and diamonds is None:
            logger.warning("gift_catalog_invalid_diamond_count", gift_id=str(gift_id),
                           diamond_count=repr(raw_diamonds)[:50])

        return GiftInfo(
            id=str(gift_id),
            name=str(raw.get("name") or f"Gift {gift_id}"),
            diamond_count=max(diamonds or 0, 0),
            image_url=image_url,
        )
