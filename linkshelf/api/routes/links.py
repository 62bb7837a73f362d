import json

from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response, status
from fastapi.responses import StreamingResponse

from linkshelf.api.deps import get_link_service
from linkshelf.core.urls import InvalidUrlError
from linkshelf.jobs.scheduler import EnrichmentJob
from linkshelf.schemas.links import (
    EnrichmentJobOut,
    FavoriteRequest,
    FolderOut,
    IngestRequest,
    IngestResponse,
    LinkCreate,
    LinkOut,
    LinkPatchRequest,
    SaveResultOut,
)
from linkshelf.services.feed import LinkView
from linkshelf.services.links import LinkService, SaveResult, SaveStatus
from linkshelf.services.repository import LinkRecord, RepositoryNotFoundError, RepositoryUnavailableError

router = APIRouter()


@router.get("", response_model=list[LinkOut])
async def list_links(
    favorites: bool = Query(default=False),
    domain: str | None = Query(default=None, min_length=1),
    q: str | None = Query(default=None, min_length=1),
    service: LinkService = Depends(get_link_service),
) -> list[LinkOut]:
    try:
        links = await service.list_links(_resolve_view(favorites=favorites, domain=domain, q=q))
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return [_link_out(link) for link in links]


@router.get("/stream")
async def stream_links(
    request: Request,
    favorites: bool = Query(default=False),
    domain: str | None = Query(default=None, min_length=1),
    q: str | None = Query(default=None, min_length=1),
    service: LinkService = Depends(get_link_service),
) -> StreamingResponse:
    view = _resolve_view(favorites=favorites, domain=domain, q=q)

    async def events():
        async for links in service.feed.subscribe(view):
            if await request.is_disconnected():
                break
            payload = json.dumps([_link_out(link).model_dump(mode="json") for link in links])
            yield f"event: links\ndata: {payload}\n\n"

    return StreamingResponse(events(), media_type="text/event-stream")


@router.get("/folders", response_model=list[FolderOut])
async def list_folders(service: LinkService = Depends(get_link_service)) -> list[FolderOut]:
    try:
        folders = await service.list_folders()
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return [FolderOut(domain=folder.domain, link_count=folder.link_count) for folder in folders]


@router.post("", response_model=SaveResultOut, status_code=status.HTTP_201_CREATED)
async def create_link(
    payload: LinkCreate,
    response: Response,
    service: LinkService = Depends(get_link_service),
) -> SaveResultOut:
    try:
        result = await service.save_url(payload.url)
    except InvalidUrlError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    if result.status is SaveStatus.ALREADY_EXISTS:
        response.status_code = status.HTTP_200_OK
    return _save_result_out(result)


@router.post("/ingest", response_model=IngestResponse)
async def ingest_text(payload: IngestRequest, service: LinkService = Depends(get_link_service)) -> IngestResponse:
    try:
        result = await service.ingest(payload.text)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return IngestResponse(
        link_ids=result.link_ids,
        results=[_save_result_out(item) for item in result.results],
        message=result.message,
    )


@router.get("/{link_id}", response_model=LinkOut)
async def get_link(link_id: int, service: LinkService = Depends(get_link_service)) -> LinkOut:
    try:
        link = await service.get_link(link_id)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    return _link_out(link)


@router.patch("/{link_id}", response_model=LinkOut)
async def patch_link(
    link_id: int,
    payload: LinkPatchRequest,
    service: LinkService = Depends(get_link_service),
) -> LinkOut:
    try:
        link = await service.edit_link(
            link_id,
            title=payload.title,
            description=payload.description,
            tags=payload.tags,
        )
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    return _link_out(link)


@router.post("/{link_id}/favorite", response_model=LinkOut)
async def toggle_favorite(
    link_id: int,
    payload: FavoriteRequest,
    service: LinkService = Depends(get_link_service),
) -> LinkOut:
    try:
        link = await service.toggle_favorite(link_id, payload.is_favorite)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    return _link_out(link)


@router.post("/{link_id}/refresh", response_model=EnrichmentJobOut, status_code=status.HTTP_202_ACCEPTED)
async def refresh_metadata(link_id: int, service: LinkService = Depends(get_link_service)) -> EnrichmentJobOut:
    try:
        job = await service.refresh_metadata(link_id)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    return _job_out(job)


@router.get("/{link_id}/enrichment", response_model=EnrichmentJobOut)
async def get_enrichment_status(link_id: int, service: LinkService = Depends(get_link_service)) -> EnrichmentJobOut:
    job = service.enrichment_status(link_id)
    if job is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="no enrichment job for link")
    return _job_out(job)


@router.delete("/{link_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_link(link_id: int, service: LinkService = Depends(get_link_service)) -> Response:
    try:
        await service.delete(link_id)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    return Response(status_code=status.HTTP_204_NO_CONTENT)


def _resolve_view(*, favorites: bool, domain: str | None, q: str | None) -> LinkView:
    return LinkView(favorites_only=favorites, domain=domain, query=q.strip() if q and q.strip() else None)


def _link_out(link: LinkRecord) -> LinkOut:
    return LinkOut(**link.to_dict())


def _save_result_out(result: SaveResult) -> SaveResultOut:
    return SaveResultOut(link_id=result.link_id, url=result.url, status=result.status.value)


def _job_out(job: EnrichmentJob) -> EnrichmentJobOut:
    return EnrichmentJobOut(**job.to_dict())
