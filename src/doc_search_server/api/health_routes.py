from fastapi import APIRouter, Request

router = APIRouter(tags=["health"])


@router.get("/health")
def health(request: Request):
    service = getattr(request.app.state, "search_service", None)
    if service is None:
        return {"status": "starting", "index_status": None}
    name = service.descriptor.name
    return {
        "status": "ok",
        "index": name,
        "index_status": service.index_manager.known_status(name).value,
    }
