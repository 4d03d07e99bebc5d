"""JSON API routes."""

from typing import Any

from fastapi import APIRouter, Body, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from staymerge.logging import get_logger
from staymerge.models import (
    ListingEdits,
    ListingImage,
    ScrapedListing,
    SimilarityStrategy,
    UnifyEdits,
)
from staymerge.service import ListingService

logger = get_logger(__name__)

router = APIRouter()


class _Request(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ImagesRequest(_Request):
    """Body of the analyze/dedupe endpoints."""

    images: list[ListingImage | str]
    threshold: float | None = None
    strategy: SimilarityStrategy = SimilarityStrategy.HASH


class MergeRequest(_Request):
    """Body of the unification endpoint."""

    left_id: str = Field(min_length=1)
    right_id: str = Field(min_length=1)
    merged: UnifyEdits = Field(default_factory=UnifyEdits)
    remove_sources: bool = False


def _get_service(request: Request) -> ListingService:
    return request.app.state.service  # type: ignore[no-any-return]


@router.get("/health")
async def health_check() -> JSONResponse:
    """Health check endpoint."""
    return JSONResponse({"status": "ok"})


@router.get("/api/listings")
async def list_listings(request: Request) -> JSONResponse:
    listings = await _get_service(request).list_listings()
    return JSONResponse({"listings": [listing.to_metadata() for listing in listings]})


@router.get("/api/listings/{listing_id}")
async def get_listing(request: Request, listing_id: str) -> JSONResponse:
    listing = await _get_service(request).get(listing_id)
    return JSONResponse(listing.to_metadata())


@router.post("/api/listings")
async def ingest_listing(
    request: Request,
    payload: dict[str, Any] = Body(...),
    dedupe_images: bool = False,
) -> JSONResponse:
    """Store a scraped listing, merging it into an existing one from the same URL."""
    scraped = ScrapedListing.parse(payload)
    result = await _get_service(request).ingest(scraped, dedupe_images=dedupe_images)
    return JSONResponse(
        {
            "success": True,
            "created": result.created,
            "newImages": result.new_images,
            "listing": result.listing.to_metadata(),
        },
        status_code=201 if result.created else 200,
    )


@router.patch("/api/listings/{listing_id}")
async def edit_listing(request: Request, listing_id: str, edits: ListingEdits) -> JSONResponse:
    listing = await _get_service(request).edit(listing_id, edits)
    return JSONResponse({"success": True, "listing": listing.to_metadata()})


@router.delete("/api/listings/{listing_id}")
async def delete_listing(request: Request, listing_id: str) -> JSONResponse:
    await _get_service(request).delete(listing_id)
    return JSONResponse({"success": True})


@router.post("/api/listings/{listing_id}/update")
async def refresh_listing(request: Request, listing_id: str) -> JSONResponse:
    """Re-scrape a listing and fold the new data in."""
    result = await _get_service(request).refresh(listing_id)
    return JSONResponse(
        {
            "success": True,
            "newImages": result.new_images,
            "totalImages": len(result.listing.images),
            "updateCount": result.listing.update_count,
        }
    )


@router.post("/api/listings/merge")
async def merge_listings(request: Request, body: MergeRequest) -> JSONResponse:
    """Unify two listings into one cross-platform listing."""
    unified = await _get_service(request).unify(
        body.left_id,
        body.right_id,
        body.merged,
        remove_sources=body.remove_sources,
    )
    return JSONResponse(
        {
            "success": True,
            "listing": unified.to_metadata(),
            "updated": unified.id == body.left_id,
        }
    )


@router.post("/api/images/analyze")
async def analyze_images(request: Request, body: ImagesRequest) -> JSONResponse:
    report = await _get_service(request).analyze_similarity(
        body.images, body.threshold, body.strategy
    )
    return JSONResponse(
        {"success": True, **report.model_dump(mode="json", by_alias=True, exclude_none=True)}
    )


@router.post("/api/images/dedupe")
async def dedupe_images(request: Request, body: ImagesRequest) -> JSONResponse:
    result = await _get_service(request).dedupe(body.images, body.threshold, body.strategy)
    return JSONResponse(
        {
            "success": True,
            "strategy": result.strategy.value,
            "threshold": result.threshold,
            "original": len(body.images),
            "unique": len(result.unique),
            "removed": result.removed_count,
            "truncated": result.truncated,
            "images": [
                img.model_dump(mode="json", by_alias=True, exclude_none=True)
                for img in result.unique
            ],
            "removedImages": [
                img.model_dump(mode="json", by_alias=True, exclude_none=True)
                for img in result.removed
            ],
        }
    )
