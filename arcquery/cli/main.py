#!/usr/bin/env python3
"""arcquery CLI - database setup and ad hoc queries against the archive index."""

import argparse
import asyncio
import sys

from pydicom import Dataset
from pydicom.datadict import tag_for_keyword
from sqlalchemy import select

from arcquery.exceptions import ArcQueryError
from arcquery.models import QueryRetrieveLevel, Study
from arcquery.query.context import QueryContext
from arcquery.query.models import FailedRow
from arcquery.query.params import QueryParameters
from arcquery.query.service import QueryService
from arcquery.settings import settings
from arcquery.utils.db_manager import db_manager
from arcquery.utils.logger import logger, setup_logging


def parse_keys(pairs: list[str]) -> Dataset:
    """Build the requested keys from ``Keyword=value`` arguments.

    A bare ``Keyword`` requests the attribute without matching on it.
    """
    keys = Dataset()
    for pair in pairs:
        keyword, _, value = pair.partition("=")
        if tag_for_keyword(keyword) is None:
            raise argparse.ArgumentTypeError(f"Unknown attribute keyword: {keyword}")
        setattr(keys, keyword, value.split("\\") if "\\" in value else value)
    return keys


async def init_database() -> None:
    """Create the archive tables."""
    logger.info("Initializing database...")
    await db_manager.create_db_and_tables_async()
    logger.info("Database initialized successfully")


async def drop_database() -> None:
    """Drop the archive tables, including cached aggregates."""
    await db_manager.drop_db_and_tables_async()
    await db_manager.close()


async def find(level: str, keys: Dataset, overrides: dict) -> int:
    """Print the attributes of every matching entity; returns the match count."""
    params = QueryParameters.from_settings(settings, **overrides)
    context = QueryContext(keys, params)
    async with db_manager.get_async_session_context() as session:
        results = QueryService(session).execute_query(level, context)
        async for item in results:
            if isinstance(item, FailedRow):
                print(f"# {item.level.value} pk={item.pk}: {item.error}", file=sys.stderr)
                continue
            print(item)
            print()
    await db_manager.close()
    return context.matched


async def show_aggregate(study_iuid: str) -> bool:
    """Print the aggregate of a study; returns False if the study is unknown."""
    params = QueryParameters.from_settings(settings)
    async with db_manager.get_async_session_context() as session:
        result = await session.execute(select(Study.pk).where(Study.study_iuid == study_iuid))
        study_pk = result.scalar_one_or_none()
        if study_pk is None:
            logger.error(f"Unknown study {study_iuid}")
            return False
        aggregate = await QueryService(session).get_aggregate(study_pk, params)
    await db_manager.close()
    print(f"Study:       {study_iuid}")
    print(f"View:        {aggregate.view_id}")
    print(f"Series:      {aggregate.number_of_series}")
    print(f"Instances:   {aggregate.number_of_instances}")
    print(f"Modalities:  {', '.join(aggregate.modalities_in_study)}")
    print(f"SOP classes: {', '.join(aggregate.sop_classes_in_study)}")
    print(f"AE titles:   {', '.join(aggregate.retrieve_aets) or aggregate.external_retrieve_aet or '-'}")
    print(f"Available:   {aggregate.availability.value}")
    return True


def main() -> None:
    """Main CLI entry point."""
    parser = argparse.ArgumentParser(
        prog="arcquery", description="arcquery - hierarchical query engine of an image archive"
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # db command
    db_parser = subparsers.add_parser("db", help="Database management")
    db_subparsers = db_parser.add_subparsers(dest="db_command")
    db_subparsers.add_parser("init", help="Initialize database with tables")
    db_subparsers.add_parser("drop", help="Drop all tables")

    # find command
    find_parser = subparsers.add_parser("find", help="Find patients, studies, series or instances")
    find_parser.add_argument(
        "level", type=str.upper, choices=[level.value for level in QueryRetrieveLevel]
    )
    find_parser.add_argument(
        "-k",
        "--key",
        action="append",
        default=[],
        metavar="KEYWORD=VALUE",
        help="Matching key, e.g. PatientName=SMI* (repeatable)",
    )
    find_parser.add_argument("--fuzzy", action="store_true", help="Use fuzzy name matching")
    find_parser.add_argument(
        "--relational", action="store_true", help="Let keys of lower levels restrict the result"
    )
    find_parser.add_argument(
        "--max-results", type=int, default=None, help="Maximum number of results"
    )
    find_parser.add_argument(
        "--show-rejected", action="store_true", help="Include rejected instances"
    )

    # aggregate command
    aggregate_parser = subparsers.add_parser("aggregate", help="Show the aggregate of a study")
    aggregate_parser.add_argument("study_iuid", help="Study Instance UID")

    args = parser.parse_args()
    setup_logging()

    try:
        if args.command == "db":
            if args.db_command == "init":
                asyncio.run(init_database())
            elif args.db_command == "drop":
                asyncio.run(drop_database())
            else:
                db_parser.print_help()
        elif args.command == "find":
            try:
                keys = parse_keys(args.key)
            except argparse.ArgumentTypeError as e:
                find_parser.error(str(e))
            overrides: dict = {}
            if args.fuzzy:
                overrides["matching_mode"] = "FUZZY"
            if args.relational:
                overrides["relational"] = True
            if args.max_results is not None:
                overrides["max_results"] = args.max_results
            if args.show_rejected:
                overrides["show_rejected"] = True
            matched = asyncio.run(find(args.level, keys, overrides))
            logger.info(f"{matched} matches")
        elif args.command == "aggregate":
            if not asyncio.run(show_aggregate(args.study_iuid)):
                sys.exit(1)
        else:
            parser.print_help()
            sys.exit(1)
    except ArcQueryError as e:
        logger.error(str(e))
        sys.exit(1)


if __name__ == "__main__":
    main()
