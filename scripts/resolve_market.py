#!/usr/bin/env python3
"""Resolve a market from a JSON file of organizations.

The input file holds either a list of organization rows or an object with
``organizations``, optional ``identifiers`` and optional ``tags``
(``{scope: {organization_id: tag}}``). Rows use the warehouse column names
(``dhc``, ``name``, ``type``, ``network``, ``latitude``, ``longitude``...).

Usage
-----
::

    python scripts/resolve_market.py orgs.json --lat 38.6592 --lon -90.358 --radius 10

Options::

    --scope NAME        Saved-market scope used for tags
    --center-id ID      Organization at the center (hidden from the map layer)
    --search TEXT       Client-side name/network/address filter
    --type TYPE         Keep only this organization type (repeatable)
    --http              Resolve identifiers through MARKETGEO_BASE_URL
    --json              Output machine-readable JSON
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Any

_repo = Path(__file__).resolve().parent.parent
_src = _repo / "src"
if _src.is_dir():
    sys.path.insert(0, str(_src))

from marketgeo import EngineConfig, InMemoryMarketStore, MarketEngine, MarketGeoError  # noqa: E402
from marketgeo.market import describe, filter_entities, type_counts  # noqa: E402


async def _load_store(path: Path) -> InMemoryMarketStore:
    payload = json.loads(path.read_text(encoding="utf-8"))
    if isinstance(payload, list):
        return InMemoryMarketStore(payload)

    store = InMemoryMarketStore(payload.get("organizations", []), payload.get("identifiers", []))
    for scope, tags in (payload.get("tags") or {}).items():
        for entity_id, tag in tags.items():
            await store.write_tag(scope, str(entity_id), str(tag))
    return store


def _section(title: str) -> str:
    return f"\n{'=' * 72}\n  {title}\n{'=' * 72}"


async def main() -> int:
    parser = argparse.ArgumentParser(description="Resolve a radius market from a JSON organization file.")
    parser.add_argument("input", type=Path, help="JSON file with organization rows")
    parser.add_argument("--lat", type=float, required=True, help="Center latitude")
    parser.add_argument("--lon", type=float, required=True, help="Center longitude")
    parser.add_argument("--radius", type=float, default=10.0, help="Radius in miles (default: 10)")
    parser.add_argument("--scope", help="Saved-market scope for tags")
    parser.add_argument("--center-id", help="Organization id at the center")
    parser.add_argument("--search", help="Client-side text filter")
    parser.add_argument("--type", action="append", dest="types", help="Organization type filter (repeatable)")
    parser.add_argument("--http", action="store_true", help="Resolve identifiers through MARKETGEO_BASE_URL")
    parser.add_argument("--json", action="store_true", dest="json_mode", help="Output machine-readable JSON")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")
    args = parser.parse_args()

    if args.verbose:
        logging.basicConfig(level=logging.DEBUG, format="%(levelname)s %(name)s: %(message)s")
    else:
        logging.basicConfig(level=logging.WARNING)

    store = await _load_store(args.input)
    config = EngineConfig.from_env(prefetch_enabled=False)

    try:
        async with MarketEngine(store, config, use_http=args.http) as engine:
            view = await engine.update((args.lat, args.lon), args.radius, args.scope, center_id=args.center_id)
    except MarketGeoError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 1
    if view is None:
        return 1

    entities = filter_entities(view, search=args.search, types=args.types)

    if args.json_mode:
        result: dict[str, Any] = {
            "summary": describe(view),
            "types": type_counts(view),
            "entities": [entity.model_dump(mode="json") for entity in entities],
        }
        print(json.dumps(result, indent=2, ensure_ascii=False))
        return 0

    summary = describe(view)
    print(_section(f"Market around {summary['center']} within {view.radius_miles:g} miles"))
    print(f"  entities : {summary['entities']} ({summary['tagged']} tagged)")
    if view.issues:
        print(f"  issues   : {', '.join(summary['issues'])}")
    for type_name, count in type_counts(view).items():
        print(f"  {type_name:<30} {count}")

    print(_section(f"{len(entities)} organizations"))
    for entity in entities:
        tag = "" if not entity.is_tagged else f" [{entity.tag}]"
        identifiers = "".join(
            f"  {system}={values[0]}" for system, values in entity.identifiers.items() if values
        )
        print(f"  {entity.distance_miles:6.2f} mi  {entity.name:<40} {entity.type:<20}{tag}{identifiers}")
    return 0


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
