import asyncio
import json
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, Dict, Optional

from fastapi import APIRouter, Body, Depends, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse, Response, StreamingResponse

from .artifacts import ArtifactEncoder, DescriptionEncoder
from .config import AppSettings, CONFIG_PATH, load_settings, save_settings
from .controller import TaskRegistry, TurnBusyError, TurnContext, TurnController
from .events import EventBus
from .export import export_all, export_conversation
from .identity import AccountError, AccountService
from .llm import GeminiClient
from .locales import Translator
from .mutator import evolve
from .persistence import KeyValueStorage, WorkspacePersistence
from .schemas import (
    ChangeVersionRequest,
    CloudConnectRequest,
    ContentCreate,
    Conversation,
    ConversationPatch,
    EditMessageRequest,
    ForkRequest,
    LoginRequest,
    RegisterRequest,
    SendMessageRequest,
)
from .tools import UiBridge
from .workspace import Workspace


def get_settings(request: Request) -> AppSettings:
    return request.app.state.settings


def get_event_bus(request: Request) -> EventBus:
    return request.app.state.bus


def get_workspace(request: Request) -> Workspace:
    return request.app.state.workspace


def get_controller(request: Request) -> TurnController:
    return request.app.state.controller


def get_accounts(request: Request) -> AccountService:
    return request.app.state.accounts


def get_ui(request: Request) -> UiBridge:
    return request.app.state.ui


def get_config_path(request: Request) -> Path:
    return request.app.state.config_path


def sse_format(event: dict) -> str:
    return f"data: {json.dumps(event)}\n\n"


def conversation_payload(conversation: Conversation) -> Dict[str, Any]:
    return conversation.model_dump(mode="json")


def require_conversation(workspace: Workspace, conversation_id: str) -> Conversation:
    conversation = workspace.store.get(conversation_id)
    if conversation is None:
        raise HTTPException(status_code=404, detail="Conversation not found")
    return conversation


def build_controller(app: FastAPI) -> TurnController:
    ctx = TurnContext(
        settings=app.state.settings,
        generation=app.state.generation,
        t=app.state.t,
        workspace=app.state.workspace,
        bus=app.state.bus,
        ui=app.state.ui,
        encoder=app.state.encoder,
        tasks=app.state.tasks,
    )
    return TurnController(ctx)


router = APIRouter()


@router.get("/settings")
async def get_settings_route(settings: AppSettings = Depends(get_settings)):
    return {"settings": settings.to_safe_dict()}


@router.post("/settings")
async def update_settings_route(
    request: Request,
    settings: AppSettings = Depends(get_settings),
    config_path: Path = Depends(get_config_path),
):
    body = await request.json()
    if not isinstance(body, dict):
        raise HTTPException(status_code=400, detail="Settings body must be an object.")
    current = settings.model_dump()
    generation_body = body.get("generation")
    if isinstance(generation_body, dict) and generation_body.get("api_key") == "********":
        generation_body = {k: v for k, v in generation_body.items() if k != "api_key"}
        body = {**body, "generation": generation_body}
    for key, value in body.items():
        if isinstance(value, dict) and isinstance(current.get(key), dict):
            current[key] = {**current[key], **value}
        else:
            current[key] = value
    try:
        new_settings = AppSettings(**current)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    save_settings(new_settings, config_path=config_path)
    request.app.state.settings = new_settings
    generation = request.app.state.generation
    if isinstance(generation, GeminiClient):
        generation.base_url = new_settings.generation.base_url.rstrip("/")
        generation.api_key = new_settings.generation.api_key
    request.app.state.controller = build_controller(request.app)
    return {"ok": True, "settings": new_settings.to_safe_dict()}


# Conversations


@router.get("/api/conversations")
async def list_conversations(workspace: Workspace = Depends(get_workspace)):
    return {
        "conversations": [conversation_payload(c) for c in workspace.store.list_sorted()],
        "active_conversation_id": workspace.active_conversation_id,
    }


@router.post("/api/conversations")
async def create_conversation(
    payload: Dict[str, Any] = Body(default={}),
    workspace: Workspace = Depends(get_workspace),
):
    conversation = workspace.new_conversation(payload.get("model"))
    return {"conversation": conversation_payload(conversation)}


@router.get("/api/conversations/{conversation_id}")
async def get_conversation(conversation_id: str, workspace: Workspace = Depends(get_workspace)):
    conversation = require_conversation(workspace, conversation_id)
    workspace.active_conversation_id = conversation.id
    return {"conversation": conversation_payload(conversation)}


@router.patch("/api/conversations/{conversation_id}")
async def update_conversation(
    conversation_id: str,
    patch: ConversationPatch,
    workspace: Workspace = Depends(get_workspace),
):
    require_conversation(workspace, conversation_id)
    changes = patch.model_dump(exclude_none=True)
    if "title" in changes and not changes["title"].strip():
        raise HTTPException(status_code=400, detail="Title must not be empty.")
    conversation = workspace.store.upsert(conversation_id, lambda c: evolve(c, **changes))
    return {"conversation": conversation_payload(conversation)}


@router.delete("/api/conversations/{conversation_id}")
async def delete_conversation(
    conversation_id: str,
    workspace: Workspace = Depends(get_workspace),
    controller: TurnController = Depends(get_controller),
):
    require_conversation(workspace, conversation_id)
    controller.stop(conversation_id)
    workspace.store.remove(conversation_id)
    return {"ok": True, "active_conversation_id": workspace.active_conversation_id}


async def start_message(
    controller: TurnController, conversation_id: Optional[str], body: SendMessageRequest
) -> Dict[str, Any]:
    try:
        conversation, _task = await controller.send_message(
            conversation_id,
            body.text,
            images=body.images,
            audio=body.audio,
            text_attachment=body.text_attachment,
            model=body.model,
        )
    except KeyError:
        raise HTTPException(status_code=404, detail="Conversation not found")
    except TurnBusyError as exc:
        raise HTTPException(status_code=409, detail=str(exc))
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    return {"conversation": conversation_payload(conversation)}


@router.post("/api/messages")
async def send_first_message(body: SendMessageRequest, controller: TurnController = Depends(get_controller)):
    return await start_message(controller, None, body)


@router.post("/api/conversations/{conversation_id}/messages")
async def send_message(
    conversation_id: str,
    body: SendMessageRequest,
    controller: TurnController = Depends(get_controller),
):
    return await start_message(controller, conversation_id, body)


@router.post("/api/conversations/{conversation_id}/messages/{message_id}/edit")
async def edit_message(
    conversation_id: str,
    message_id: str,
    body: EditMessageRequest,
    controller: TurnController = Depends(get_controller),
    workspace: Workspace = Depends(get_workspace),
):
    if not body.text.strip():
        raise HTTPException(status_code=400, detail="Message is empty.")
    try:
        await controller.edit_message(conversation_id, message_id, body.text)
    except KeyError:
        raise HTTPException(status_code=404, detail="Conversation or message not found")
    except TurnBusyError as exc:
        raise HTTPException(status_code=409, detail=str(exc))
    return {"conversation": conversation_payload(require_conversation(workspace, conversation_id))}


@router.post("/api/conversations/{conversation_id}/messages/{message_id}/version")
async def change_version(
    conversation_id: str,
    message_id: str,
    body: ChangeVersionRequest,
    controller: TurnController = Depends(get_controller),
    workspace: Workspace = Depends(get_workspace),
):
    try:
        task = await controller.change_version(conversation_id, message_id, body.index)
    except KeyError:
        raise HTTPException(status_code=404, detail="Conversation or message not found")
    except IndexError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    except TurnBusyError as exc:
        raise HTTPException(status_code=409, detail=str(exc))
    return {
        "conversation": conversation_payload(require_conversation(workspace, conversation_id)),
        "rerun": task is not None,
    }


@router.post("/api/conversations/{conversation_id}/regenerate")
async def regenerate(
    conversation_id: str,
    controller: TurnController = Depends(get_controller),
    workspace: Workspace = Depends(get_workspace),
):
    try:
        await controller.regenerate(conversation_id)
    except KeyError:
        raise HTTPException(status_code=404, detail="Conversation not found")
    except TurnBusyError as exc:
        raise HTTPException(status_code=409, detail=str(exc))
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    return {"conversation": conversation_payload(require_conversation(workspace, conversation_id))}


@router.post("/api/conversations/{conversation_id}/fork")
async def fork_conversation(
    conversation_id: str,
    body: ForkRequest,
    controller: TurnController = Depends(get_controller),
):
    try:
        forked = controller.fork_conversation(conversation_id, body.message_id)
    except KeyError:
        raise HTTPException(status_code=404, detail="Conversation or message not found")
    return {"conversation": conversation_payload(forked)}


@router.post("/api/conversations/{conversation_id}/stop")
async def stop_conversation(
    conversation_id: str,
    controller: TurnController = Depends(get_controller),
    workspace: Workspace = Depends(get_workspace),
):
    require_conversation(workspace, conversation_id)
    stopped = controller.stop(conversation_id)
    return {"ok": True, "status": "stopping" if stopped else "idle"}


@router.get("/api/conversations/{conversation_id}/export")
async def export_conversation_route(
    conversation_id: str,
    format: str = "md",
    workspace: Workspace = Depends(get_workspace),
):
    conversation = require_conversation(workspace, conversation_id)
    try:
        content, media_type, filename = export_conversation(conversation, format)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    return Response(
        content=content,
        media_type=media_type,
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@router.get("/api/export")
async def export_all_route(request: Request, workspace: Workspace = Depends(get_workspace)):
    data, filename = export_all(workspace)
    t = request.app.state.t
    request.app.state.bus.toast(t("export_success"), "success", t("toast_success_title"))
    return JSONResponse(data, headers={"Content-Disposition": f'attachment; filename="{filename}"'})


# Memory, coach goals, attachments, cloud connections


@router.get("/api/memory")
async def list_memory(workspace: Workspace = Depends(get_workspace)):
    return {"facts": [fact.model_dump() for fact in workspace.memory_facts]}


@router.post("/api/memory")
async def create_memory(item: ContentCreate, workspace: Workspace = Depends(get_workspace)):
    if not item.content.strip():
        raise HTTPException(status_code=400, detail="Fact must not be empty.")
    added = workspace.add_memory_facts([item.content])
    return {"added": [fact.model_dump() for fact in added]}


@router.delete("/api/memory")
async def clear_memory(workspace: Workspace = Depends(get_workspace)):
    workspace.clear_memory()
    return {"ok": True}


@router.delete("/api/memory/{fact_id}")
async def delete_memory(fact_id: str, workspace: Workspace = Depends(get_workspace)):
    if not workspace.remove_memory_fact(fact_id):
        raise HTTPException(status_code=404, detail="Fact not found")
    return {"ok": True}


@router.get("/api/coach-goals")
async def list_coach_goals(workspace: Workspace = Depends(get_workspace)):
    return {"goals": [goal.model_dump() for goal in workspace.coach_goals]}


@router.post("/api/coach-goals")
async def create_coach_goal(item: ContentCreate, workspace: Workspace = Depends(get_workspace)):
    if not item.content.strip():
        raise HTTPException(status_code=400, detail="Goal must not be empty.")
    goal = workspace.add_coach_goal(item.content)
    return {"goal": goal.model_dump()}


@router.delete("/api/coach-goals/{goal_id}")
async def delete_coach_goal(goal_id: str, workspace: Workspace = Depends(get_workspace)):
    if not workspace.remove_coach_goal(goal_id):
        raise HTTPException(status_code=404, detail="Goal not found")
    return {"ok": True}


@router.get("/api/recent-attachments")
async def list_recent_attachments(workspace: Workspace = Depends(get_workspace)):
    return {"attachments": [item.model_dump(exclude_none=True) for item in workspace.recent_attachments]}


@router.get("/api/cloud-connections")
async def list_cloud_connections(workspace: Workspace = Depends(get_workspace)):
    return {"connections": {k: v.model_dump() for k, v in workspace.cloud_connections.items()}}


@router.post("/api/cloud-connections/{provider}")
async def connect_cloud(provider: str, body: CloudConnectRequest, workspace: Workspace = Depends(get_workspace)):
    connection = workspace.connect_cloud(provider, body.account)
    return {"connection": connection.model_dump()}


@router.delete("/api/cloud-connections/{provider}")
async def disconnect_cloud(provider: str, workspace: Workspace = Depends(get_workspace)):
    if not workspace.disconnect_cloud(provider):
        raise HTTPException(status_code=404, detail="Provider not connected")
    return {"ok": True}


@router.get("/api/ui-state")
async def get_ui_state(ui: UiBridge = Depends(get_ui)):
    return {"state": ui.state.model_dump(), "opened_urls": list(ui.opened_urls)}


# Identity


@router.post("/api/auth/register")
async def register(body: RegisterRequest, accounts: AccountService = Depends(get_accounts)):
    if not body.name.strip() or not body.email.strip() or not body.password:
        raise HTTPException(status_code=400, detail="Name, email and password are required.")
    try:
        user = await accounts.register(body.name, body.email, body.password)
    except AccountError as exc:
        raise HTTPException(status_code=409, detail=str(exc))
    return {"user": user.model_dump()}


@router.post("/api/auth/login")
async def login(body: LoginRequest, accounts: AccountService = Depends(get_accounts)):
    try:
        user = await accounts.login(body.email, body.password)
    except AccountError as exc:
        raise HTTPException(status_code=401, detail=str(exc))
    return {"user": user.model_dump()}


@router.post("/api/auth/logout")
async def logout(accounts: AccountService = Depends(get_accounts)):
    await accounts.logout()
    return {"ok": True}


@router.get("/api/auth/session")
async def session(accounts: AccountService = Depends(get_accounts)):
    user = accounts.current_user
    return {"user": user.model_dump() if user else None}


@router.get("/events")
async def stream_events(bus: EventBus = Depends(get_event_bus)):
    async def event_generator():
        queue = await bus.subscribe()
        try:
            while True:
                ev = await queue.get()
                yield sse_format(ev)
        except asyncio.CancelledError:
            pass
        finally:
            await bus.unsubscribe(queue)

    return StreamingResponse(event_generator(), media_type="text/event-stream")


def create_app(
    settings: AppSettings,
    *,
    storage: Optional[KeyValueStorage] = None,
    generation: Optional[Any] = None,
    encoder: Optional[ArtifactEncoder] = None,
    config_path: Optional[Path] = None,
) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await app.state.storage.init()
        user = await app.state.accounts.restore_session()
        await app.state.persistence.load(user)
        try:
            yield
        finally:
            await app.state.tasks.shutdown()
            await app.state.persistence.flush()
            close = getattr(app.state.generation, "close", None)
            if close is not None:
                await close()

    app = FastAPI(title="Universum Assistant Core", lifespan=lifespan)
    app.state.settings = settings
    app.state.t = Translator(settings.locale)
    app.state.bus = EventBus()
    app.state.storage = storage or KeyValueStorage(settings.database_path)
    app.state.workspace = Workspace(app.state.bus, app.state.t, settings.recent_attachment_limit)
    app.state.persistence = WorkspacePersistence(
        app.state.storage, app.state.workspace, app.state.bus, app.state.t, settings.persist_debounce_ms
    )
    app.state.accounts = AccountService(app.state.storage, app.state.persistence, app.state.t)
    app.state.generation = generation or GeminiClient(
        settings.generation.base_url, settings.generation.api_key, settings.generation.timeout_s
    )
    app.state.encoder = encoder or DescriptionEncoder()
    app.state.ui = UiBridge(app.state.bus)
    app.state.tasks = TaskRegistry()
    app.state.turn_tasks = app.state.tasks.turn_tasks
    app.state.cancel_tokens = app.state.tasks.cancel_tokens
    app.state.config_path = config_path or CONFIG_PATH
    app.state.controller = build_controller(app)

    app.include_router(router)
    return app


app = create_app(load_settings())


if __name__ == "__main__":
    import os
    import uvicorn

    settings = app.state.settings
    reload_enabled = os.getenv("UNIVERSUM_RELOAD", "").lower() in ("1", "true", "yes", "on")
    try:
        uvicorn.run(
            "universum.main:app",
            host=settings.host,
            port=settings.port,
            reload=reload_enabled,
        )
    except KeyboardInterrupt:
        pass
