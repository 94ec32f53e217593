from __future__ import annotations

import argparse
import asyncio
import importlib
from pathlib import Path
import sys
from typing import Any

from resourcesql.core.logging import configure_logging
from resourcesql.domain.models import Base
from resourcesql.persistence.store import RawStatement, ResourceStore


def _build_parser() -> argparse.ArgumentParser:
    # Keep CLI arguments explicit so provisioning never guesses which models to create.
    parser = argparse.ArgumentParser(description="Create missing tables for mapped resource models")
    parser.add_argument(
        "--models",
        action="append",
        required=True,
        help="Module defining mapped models; repeat for several modules",
    )
    parser.add_argument("--sql", default=None, help="File of extra statements separated by ';'")
    parser.add_argument(
        "--tolerate-errors",
        action="store_true",
        help="Log and skip failing extra statements instead of rolling back",
    )
    return parser


def _load_models(module_names: list[str]) -> list[Any]:
    # Importing a module registers its classes on the shared declarative registry.
    for name in module_names:
        importlib.import_module(name)
    return [
        mapper.class_
        for mapper in Base.registry.mappers
        if any(_in_module(mapper.class_.__module__, name) for name in module_names)
    ]


def _in_module(module: str, name: str) -> bool:
    return module == name or module.startswith(f"{name}.")


def _load_statements(path: str | None, error_ok: bool) -> list[RawStatement]:
    if path is None:
        return []
    chunks = Path(path).read_text(encoding="utf-8").split(";")
    return [RawStatement(chunk.strip(), error_ok=error_ok) for chunk in chunks if chunk.strip()]


async def _create_tables(args: argparse.Namespace) -> int:
    models = _load_models(args.models)
    statements = _load_statements(args.sql, args.tolerate_errors)
    store = await ResourceStore.from_settings()
    async with store:
        await store.create_tables(models, statements)
    print(f"tables ready: {', '.join(sorted(model.__tablename__ for model in models)) or '-'}")
    print(f"extra statements: {len(statements)}")
    return 0


def main() -> int:
    configure_logging()
    parser = _build_parser()
    args = parser.parse_args()
    try:
        return asyncio.run(_create_tables(args))
    except Exception as exc:  # noqa: BLE001 - surface provisioning failures clearly
        print(f"create_tables failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
