from fastapi import HTTPException, Request, status

from ..search.service import SearchService


def get_search_service(request: Request) -> SearchService:
    """
    Return the SearchService built in the application lifespan.
    """
    service = getattr(request.app.state, "search_service", None)
    if service is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Search service is not initialized",
        )
    return service
