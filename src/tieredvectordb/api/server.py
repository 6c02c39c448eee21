#!/usr/bin/env python3
"""
CLI script to run the TieredVectorDB REST API server.

Usage:
    python -m tieredvectordb.api.server --archive-dir ./archive --hot-from-year 2022
    or
    tieredvectordb-server --help

Settings not given on the command line come from TVDB_* environment variables.
"""
import argparse
import os

import uvicorn

from ..config import EngineSettings
from ..implementations.query_processor import QueryProcessor
from .rest_api import RestAPI


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Run TieredVectorDB REST API server")
    parser.add_argument(
        "--host",
        default="127.0.0.1",
        help="Host to bind to (default: 127.0.0.1)"
    )
    parser.add_argument(
        "--port",
        type=int,
        default=8000,
        help="Port to bind to (default: 8000)"
    )
    parser.add_argument(
        "--reload",
        action="store_true",
        help="Enable auto-reload for development"
    )
    parser.add_argument(
        "--log-level",
        default="info",
        choices=["debug", "info", "warning", "error"],
        help="Log level (default: info)"
    )
    parser.add_argument(
        "--log-file",
        help="Also write logs to this file"
    )
    parser.add_argument(
        "--dimension",
        type=int,
        help="Embedding dimension (default: 768)"
    )
    parser.add_argument(
        "--metric",
        choices=["cosine", "euclidean", "dot"],
        help="Distance metric of the graph index (default: cosine)"
    )
    parser.add_argument(
        "--hot-from-year",
        type=int,
        help="First year kept in the hot tier (default: current year)"
    )
    parser.add_argument(
        "--archive-dir",
        help="Directory for Parquet archives; in-memory archive if omitted"
    )
    parser.add_argument(
        "--embedding-url",
        help="Ollama base URL for /search/text, e.g. http://localhost:11434"
    )
    parser.add_argument(
        "--embedding-model",
        help="Ollama embedding model (default: nomic-embed-text)"
    )
    return parser


def settings_from_args(args: argparse.Namespace) -> EngineSettings:
    return EngineSettings.from_env(
        dimension=args.dimension,
        metric=args.metric,
        hot_from_year=args.hot_from_year,
        archive_dir=args.archive_dir,
        embedding_url=args.embedding_url,
        embedding_model=args.embedding_model,
    )


def main():
    """Main function to run the API server."""
    args = build_parser().parse_args()
    settings = settings_from_args(args)

    print(f"Starting TieredVectorDB API server on {args.host}:{args.port}")
    print(f"API documentation available at: http://{args.host}:{args.port}/docs")
    print(f"Dimension: {settings.dimension}, metric: {settings.metric}")
    if settings.archive_dir:
        print(f"Archive: {settings.archive_dir / settings.archive_prefix}")
    if settings.embedding_url:
        print(f"Embeddings: {settings.embedding_model} at {settings.embedding_url}")

    if args.reload:
        # the reloader re-imports the app, so settings travel through the environment
        os.environ.update(settings.to_env())
        uvicorn.run(
            "tieredvectordb.api.rest_api:create_app",
            factory=True,
            host=args.host,
            port=args.port,
            reload=True,
            log_level=args.log_level,
        )
        return

    api = RestAPI(
        query_processor=QueryProcessor.from_settings(settings),
        title="TieredVectorDB API",
        enable_file_logging=bool(args.log_file),
        log_level=args.log_level.upper(),
        log_file=args.log_file or "tiered_vector_db_api.log",
    )

    uvicorn.run(
        api.get_app(),
        host=args.host,
        port=args.port,
        log_level=args.log_level,
        log_config=None
    )


if __name__ == "__main__":
    main()
