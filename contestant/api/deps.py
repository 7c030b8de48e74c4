from __future__ import annotations

from fastapi import HTTPException, Request, status

from contestant.client import ContestantClient


def get_client(request: Request) -> ContestantClient:
    client = getattr(request.app.state, "client", None)
    if client is None:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Contestant client not started")
    return client
