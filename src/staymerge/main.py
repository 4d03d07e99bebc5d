"""Command-line entry point for the listing store."""

import argparse
import asyncio
import json
import logging
import sys

from staymerge.config import Settings
from staymerge.errors import StayMergeError
from staymerge.logging import configure_logging, get_logger
from staymerge.models import SimilarityStrategy, StoredListing, UnifyEdits
from staymerge.service import ListingService

logger = get_logger(__name__)


def _print_listing_line(listing: StoredListing) -> None:
    platforms = ", ".join(p.display_name for p in listing.contributing_platforms)
    scraped = listing.scraped_at.strftime("%Y-%m-%d") if listing.scraped_at else "-"
    print(
        f"{listing.id:<28} {platforms:<24} {len(listing.images):>4} img  "
        f"{scraped}  {listing.title}"
    )


async def run_list(service: ListingService) -> None:
    listings = await service.list_listings()
    for listing in listings:
        _print_listing_line(listing)
    print(f"\n{len(listings)} listings")


async def run_show(service: ListingService, listing_id: str) -> None:
    listing = await service.get(listing_id)
    print(json.dumps(listing.to_metadata(), indent=2, ensure_ascii=False))


async def run_analyze(
    service: ListingService,
    listing_id: str,
    threshold: float | None,
    strategy: SimilarityStrategy,
) -> None:
    report = await service.analyze_listing(listing_id, threshold, strategy)
    print(
        f"{len(report.images)} images, {report.groups} groups, "
        f"{report.duplicates} duplicates ({report.strategy}, threshold {report.threshold})"
    )
    for item in report.images:
        if item.is_duplicate:
            score = (
                f"distance {item.distance}"
                if item.distance is not None
                else f"similarity {item.similarity}"
            )
            print(f"    dup #{item.original_index:<4} {score:<18} {item.image.local}")
        else:
            print(f"  group {item.group:<3} #{item.original_index:<4} {item.image.local}")
    if report.truncated:
        print(f"{report.truncated} images beyond the per-call cap were not examined")


async def run_dedupe(
    service: ListingService,
    listing_id: str,
    threshold: float | None,
    strategy: SimilarityStrategy,
    *,
    apply: bool,
) -> None:
    result = await service.dedupe_listing(listing_id, threshold, strategy, apply=apply)
    for img in result.removed:
        print(f"  duplicate: {img.local or img.original}")
    verb = "Removed" if apply else "Would remove"
    print(f"{verb} {result.removed_count} duplicates, {len(result.unique)} unique images remain")


async def run_unify(
    service: ListingService, left_id: str, right_id: str, *, remove_sources: bool
) -> None:
    left = await service.get(left_id)
    right = await service.get(right_id)
    # Without a review step, keep every image of both sides; dedupe drops the repeats.
    edits = UnifyEdits(images=[*left.images, *right.images])
    unified = await service.unify(left_id, right_id, edits, remove_sources=remove_sources)
    print(f"Unified into {unified.id} ({len(unified.images)} images)")


async def run_delete(service: ListingService, listing_id: str) -> None:
    await service.delete(listing_id)
    print(f"Deleted {listing_id}")


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="StayMerge - vacation-rental listing store with cross-platform merging"
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Enable debug-level logging for troubleshooting",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("serve", help="Start the web API")
    sub.add_parser("list", help="List stored listings, newest first")

    show = sub.add_parser("show", help="Print a listing's metadata")
    show.add_argument("listing_id")

    for name, help_text in (
        ("analyze", "Group a listing's images by perceptual similarity"),
        ("dedupe", "Find (and with --apply remove) duplicate images of a listing"),
    ):
        cmd = sub.add_parser(name, help=help_text)
        cmd.add_argument("listing_id")
        cmd.add_argument(
            "--threshold",
            type=float,
            default=None,
            help="Hamming distance (hash) or cosine similarity (embedding) threshold",
        )
        cmd.add_argument(
            "--strategy",
            type=SimilarityStrategy,
            choices=list(SimilarityStrategy),
            default=SimilarityStrategy.HASH,
        )
        if name == "dedupe":
            cmd.add_argument(
                "--apply",
                action="store_true",
                help="Save the deduplicated image list and delete the removed files",
            )

    unify = sub.add_parser("unify", help="Unify two listings into one cross-platform listing")
    unify.add_argument("left_id")
    unify.add_argument("right_id")
    unify.add_argument(
        "--remove-sources",
        action="store_true",
        help="Delete the absorbed single-platform listings afterwards",
    )

    delete = sub.add_parser("delete", help="Delete a listing and its files")
    delete.add_argument("listing_id")
    return parser


async def _dispatch(settings: Settings, args: argparse.Namespace) -> None:
    service = ListingService.from_settings(settings)
    try:
        match args.command:
            case "list":
                await run_list(service)
            case "show":
                await run_show(service, args.listing_id)
            case "analyze":
                await run_analyze(service, args.listing_id, args.threshold, args.strategy)
            case "dedupe":
                await run_dedupe(
                    service, args.listing_id, args.threshold, args.strategy, apply=args.apply
                )
            case "unify":
                await run_unify(
                    service, args.left_id, args.right_id, remove_sources=args.remove_sources
                )
            case "delete":
                await run_delete(service, args.listing_id)
    finally:
        await service.close()


def main(argv: list[str] | None = None) -> None:
    """Main entry point."""
    args = _build_parser().parse_args(argv)

    configure_logging(json_output=False, level=logging.DEBUG if args.debug else logging.INFO)

    try:
        settings = Settings()
    except Exception as e:
        logger.error("failed_to_load_settings", error=str(e))
        print(f"Error: Failed to load settings. {e}")
        sys.exit(1)

    if args.command == "serve":
        import uvicorn

        from staymerge.web.app import create_app

        app = create_app(settings)
        uvicorn.run(app, host=settings.web_host, port=settings.web_port, log_level="info")
        return

    try:
        asyncio.run(_dispatch(settings, args))
    except StayMergeError as e:
        logger.error("command_failed", command=args.command, error=str(e))
        print(f"Error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
