from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query, WebSocket, WebSocketDisconnect, status

from contestant.api.deps import get_client
from contestant.api.models import (
    BuzzResponse,
    CommandRequest,
    JudgementRequest,
    LoginRequest,
    NoticeListResponse,
    PresenceResponse,
    SelectionRequest,
    StageSummary,
    StationState,
    SubmitRequest,
    SubmitResponse,
)
from contestant.client import ContestantClient
from contestant.quiz.evaluation import EmptyAnswerError
from contestant.session_store import User
from contestant.websocket_hub import screens

router = APIRouter()


def _station_state(client: ContestantClient) -> StationState:
    store = client.workflow.store
    return StationState(
        user=client.session.user,
        is_leader=client.elector.is_leader,
        connection=client.transport.status,
        runtime=client.runtime.state,
        selection=client.runtime.selection,
        stage=StageSummary(
            selected_event=store.selected_event,
            stages=store.stages,
            current_stage=store.current_stage,
            team_profile=store.team_profile,
            score_record=store.score_record,
            remaining_count=store.remaining_count,
            waiting_for_stage_start=store.waiting_for_stage_start,
            is_loading=store.is_loading,
            error=store.error,
            command_log=store.command_log,
        ),
    )


@router.websocket("/ws/station")
async def station_updates_ws(websocket: WebSocket) -> None:
    await screens.connect(websocket)

    try:
        # Keep the socket open; client can optionally send pings.
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        await screens.disconnect(websocket)
    except Exception:
        await screens.disconnect(websocket)
        raise


@router.get("/healthcheck")
async def healthcheck() -> dict[str, str]:
    return {"status": "ok"}


@router.get("/state", response_model=StationState)
async def get_state_route(client: ContestantClient = Depends(get_client)) -> StationState:
    return _station_state(client)


@router.post("/login", response_model=User)
async def login_route(payload: LoginRequest, client: ContestantClient = Depends(get_client)) -> User:
    try:
        return await client.login(User(id=payload.id.strip(), name=payload.name, team=payload.team))
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(e)) from e


@router.post("/logout", status_code=status.HTTP_204_NO_CONTENT)
async def logout_route(client: ContestantClient = Depends(get_client)) -> None:
    await client.logout()


@router.put("/selection", response_model=StationState)
async def selection_route(payload: SelectionRequest, client: ContestantClient = Depends(get_client)) -> StationState:
    client.runtime.set_selection(payload.value)
    return _station_state(client)


@router.post("/submit", response_model=SubmitResponse)
async def submit_route(payload: SubmitRequest, client: ContestantClient = Depends(get_client)) -> SubmitResponse:
    runtime = client.runtime
    try:
        result = await runtime.submit_answer(payload.value, allow_empty=payload.allow_empty)
    except EmptyAnswerError as e:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(e)) from e
    return SubmitResponse(accepted=result is not None, result=result, state=runtime.state)


@router.post("/next", response_model=StationState)
async def next_question_route(client: ContestantClient = Depends(get_client)) -> StationState:
    await client.runtime.request_next_question()
    return _station_state(client)


@router.post("/buzz", response_model=BuzzResponse)
async def buzz_route(client: ContestantClient = Depends(get_client)) -> BuzzResponse:
    accepted = await client.buzz()
    return BuzzResponse(accepted=accepted, state=client.runtime.state)


@router.post("/commands", response_model=StationState)
async def command_route(payload: CommandRequest, client: ContestantClient = Depends(get_client)) -> StationState:
    """Run a host command locally, exactly as if it had arrived on the command topic.

    Host commands are only honoured by the tab that owns the live broker connection.
    """

    if not (client.elector.is_leader and client.transport.is_connected()):
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Station is not receiving host commands")
    await client.dispatcher.handle_command(payload.command)
    return _station_state(client)


@router.post("/judgement", response_model=StationState)
async def judgement_route(payload: JudgementRequest, client: ContestantClient = Depends(get_client)) -> StationState:
    client.runtime.apply_host_judgement(payload.result)
    return _station_state(client)


@router.post("/reset", response_model=StationState)
async def reset_route(client: ContestantClient = Depends(get_client)) -> StationState:
    await client.runtime.reset()
    return _station_state(client)


@router.get("/notices", response_model=NoticeListResponse)
async def notices_route(
    limit: int | None = Query(default=None, ge=1, le=50),
    client: ContestantClient = Depends(get_client),
) -> NoticeListResponse:
    return NoticeListResponse(notices=client.notices.recent(limit))


@router.get("/presence/{client_id}", response_model=PresenceResponse)
async def presence_route(client_id: str, client: ContestantClient = Depends(get_client)) -> PresenceResponse:
    return PresenceResponse(client_id=client_id, status=await client.read_presence(client_id))


@router.post("/leader/visible", response_model=StationState)
async def visible_route(client: ContestantClient = Depends(get_client)) -> StationState:
    client.elector.on_visible()
    return _station_state(client)
