from __future__ import annotations

"""CLI utility to clear a notebook's vector collection."""

import argparse

from src.app.dependencies import get_registry
from src.app.settings import settings


def main() -> None:
    """Clear the notebook collection for the configured or given backend."""
    parser = argparse.ArgumentParser(description="Clear a notebook vector collection.")
    parser.add_argument("notebook_id", help="Notebook whose vectors are removed.")
    parser.add_argument(
        "--backend",
        default=settings.vectorstore,
        help="Vector store backend (memory, sqlite, milvus).",
    )
    parser.add_argument(
        "--dimensions",
        type=int,
        default=None,
        help="Vector width of the collection; defaults to the stored width. A width "
        "different from the stored one purges the old collection.",
    )
    args = parser.parse_args()

    registry = get_registry()
    try:
        index = registry.get_active_index(args.notebook_id, args.backend, args.dimensions)
        before = index.count()
        index.clear()
        print(f"Cleared {before} vectors from {index.collection_name or args.notebook_id}")
    finally:
        registry.close_all()


if __name__ == "__main__":
    main()
