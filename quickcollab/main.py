import json
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import APIRouter, Depends, FastAPI, Request, WebSocket, WebSocketDisconnect
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from .auth import get_current_user
from .config import Settings, configure_logging
from .errors import QuickCollabError, ValidationError
from .hub import CollabHub, build_storage
from .schemas import (
    BoardCreate,
    BoardOut,
    CollaboratorOut,
    CommentCreate,
    CommentOut,
    InviteCreate,
    TaskAssign,
    TaskCreate,
    TaskOut,
    TaskPatch,
    UserCreate,
    UserOut,
)
from .session import WebSocketTransport
from .storage import Repository

VERSION = "1.0.0"

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1")


def get_hub(request: Request) -> CollabHub:
    return request.app.state.hub


# === Health & metadata ===


@router.get("/health")
def health() -> dict:
    return {"status": "ok"}


@router.get("/version")
def version() -> dict:
    return {"version": VERSION}


# === Users ===


@router.post("/users", response_model=UserOut, status_code=201)
async def register_user(payload: UserCreate, hub: CollabHub = Depends(get_hub)):
    return (await hub.coordinator.register_user(payload)).entity


@router.get("/me", response_model=UserOut)
async def me(user: str = Depends(get_current_user), hub: CollabHub = Depends(get_hub)):
    return await hub.coordinator.get_user(user)


# === Boards ===


@router.post("/boards", response_model=BoardOut, status_code=201)
async def create_board(payload: BoardCreate, user: str = Depends(get_current_user), hub: CollabHub = Depends(get_hub)):
    return (await hub.coordinator.create_board(user, payload)).entity


@router.get("/boards", response_model=dict)
async def list_boards(user: str = Depends(get_current_user), hub: CollabHub = Depends(get_hub)):
    return {"boards": await hub.coordinator.list_boards(user)}


@router.get("/boards/{board_id}", response_model=BoardOut)
async def get_board(board_id: str, user: str = Depends(get_current_user), hub: CollabHub = Depends(get_hub)):
    return await hub.coordinator.get_board(user, board_id)


@router.post("/boards/{board_id}/collaborators", response_model=CollaboratorOut, status_code=201)
async def invite_collaborator(
    board_id: str,
    payload: InviteCreate,
    user: str = Depends(get_current_user),
    hub: CollabHub = Depends(get_hub),
):
    return (await hub.coordinator.invite_collaborator(user, board_id, payload)).entity


# === Tasks ===


@router.get("/tasks", response_model=list[TaskOut])
async def list_tasks(boardId: str, user: str = Depends(get_current_user), hub: CollabHub = Depends(get_hub)):
    return await hub.coordinator.list_tasks(user, boardId)


@router.post("/tasks", response_model=TaskOut, status_code=201)
async def create_task(payload: TaskCreate, user: str = Depends(get_current_user), hub: CollabHub = Depends(get_hub)):
    return (await hub.coordinator.create_task(user, payload)).entity


@router.patch("/tasks/{task_id}", response_model=TaskOut)
async def update_task(
    task_id: str,
    payload: TaskPatch,
    user: str = Depends(get_current_user),
    hub: CollabHub = Depends(get_hub),
):
    return (await hub.coordinator.update_task(user, task_id, payload)).entity


@router.put("/tasks/{task_id}", response_model=TaskOut)
async def edit_task(
    task_id: str,
    payload: TaskPatch,
    user: str = Depends(get_current_user),
    hub: CollabHub = Depends(get_hub),
):
    return (await hub.coordinator.edit_task(user, task_id, payload)).entity


@router.put("/tasks/{task_id}/assign", response_model=TaskOut)
async def assign_task(
    task_id: str,
    payload: TaskAssign,
    user: str = Depends(get_current_user),
    hub: CollabHub = Depends(get_hub),
):
    return (await hub.coordinator.assign_task(user, task_id, payload.assignedTo)).entity


@router.delete("/tasks/{task_id}")
async def delete_task(
    task_id: str,
    boardId: Optional[str] = None,
    user: str = Depends(get_current_user),
    hub: CollabHub = Depends(get_hub),
):
    result = await hub.coordinator.delete_task(user, task_id, board_id=boardId)
    return {"message": "Task deleted", "id": result.entity}


# === Comments ===


@router.get("/comments", response_model=list[CommentOut])
async def list_comments(taskId: str, user: str = Depends(get_current_user), hub: CollabHub = Depends(get_hub)):
    return await hub.coordinator.list_comments(user, taskId)


@router.post("/comments", response_model=CommentOut, status_code=201)
async def create_comment(payload: CommentCreate, user: str = Depends(get_current_user), hub: CollabHub = Depends(get_hub)):
    return (await hub.coordinator.create_comment(user, payload)).entity


# === Real-time events ===


@router.websocket("/ws")
async def events(websocket: WebSocket, token: Optional[str] = None):
    hub: CollabHub = websocket.app.state.hub
    await websocket.accept()
    session = hub.open_session(WebSocketTransport(websocket))
    try:
        if token:
            principal = await hub.resolve_token(token)
            if principal is None:
                await websocket.close(code=4401)
                return
            session.authenticate(principal)
        while True:
            raw = await websocket.receive_text()
            try:
                message = json.loads(raw)
            except ValueError:
                logger.warning("session %s: dropped non-JSON frame", session.id)
                continue
            await session.handle(message)
    except WebSocketDisconnect:
        pass
    finally:
        session.disconnect()


# === Errors ===


async def _quickcollab_error(request: Request, exc: QuickCollabError) -> JSONResponse:
    logger.info("%s %s -> %s: %s", request.method, request.url.path, exc.status_code, exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


async def _request_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = exc.errors()
    first = errors[0] if errors else {}
    loc = [str(part) for part in first.get("loc", ()) if part not in ("body", "query", "path")]
    error = ValidationError(first.get("msg", "invalid request"), field=".".join(loc) or None)
    return await _quickcollab_error(request, error)


def create_app(settings: Optional[Settings] = None, storage: Optional[Repository] = None) -> FastAPI:
    settings = settings or Settings.from_env()
    configure_logging(settings.log_level)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        hub = CollabHub(storage if storage is not None else build_storage(settings), settings)
        app.state.hub = hub
        try:
            yield
        finally:
            await hub.close()

    app = FastAPI(title="QuickCollab API", version=VERSION, lifespan=lifespan)
    app.add_exception_handler(QuickCollabError, _quickcollab_error)
    app.add_exception_handler(RequestValidationError, _request_validation_error)
    app.include_router(router)
    return app


app = create_app()
