"""FastAPI app entrypoint for vibecheck-orchestrator."""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, TypeVar

from fastapi import Body, FastAPI, HTTPException, Request, Response
from pydantic import BaseModel, Field, ValidationError

from vibecheck_orchestrator.catalog.modes import list_modes
from vibecheck_orchestrator.catalog.profiles import ApiDefinition, CodeFile, ProfileBook, UserProfile
from vibecheck_orchestrator.config.settings import Settings, get_settings
from vibecheck_orchestrator.errors import ConfigurationError, TransportError
from vibecheck_orchestrator.orchestrator.service import (
    GenerationOrchestrator,
    build_orchestrator,
)
from vibecheck_orchestrator.session.models import ChatMessage, HistoryEntry, Round

ModelT = TypeVar("ModelT", bound=BaseModel)


class CreateRoundRequest(BaseModel):
    prompt: str = Field(min_length=1)
    prompt_image: str | None = None
    config_id: str | None = None
    batch_size: int | None = Field(default=None, ge=1, le=8)
    ab_profile_id: str | None = None


class ChatRequest(BaseModel):
    prompt: str = Field(min_length=1)
    config_id: str | None = None
    ab_profile_id: str | None = None
    hybrid: bool | None = None


class EnhancePromptRequest(BaseModel):
    prompt: str = Field(min_length=1)


class CheckCodeRequest(BaseModel):
    code: str
    language: str = Field(min_length=1)


def _merged(model: type[ModelT], current: ModelT, payload: dict[str, Any]) -> ModelT:
    """Overlay a partial update on a stored record; the id never changes."""
    try:
        return model.model_validate({**current.model_dump(), **payload, "id": current.id})
    except ValidationError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc


def _ensure_runtime_state(
    app: FastAPI,
    *,
    settings: Settings,
    orchestrator_override: GenerationOrchestrator | None,
) -> None:
    if not hasattr(app.state, "orchestrator"):
        app.state.orchestrator = orchestrator_override or build_orchestrator(settings)

    if not hasattr(app.state, "settings"):
        app.state.settings = settings


def create_app(
    *,
    orchestrator: GenerationOrchestrator | None = None,
    settings_override: Settings | None = None,
) -> FastAPI:
    settings = settings_override or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        _ensure_runtime_state(app, settings=settings, orchestrator_override=orchestrator)
        yield
        await app.state.orchestrator.drain()
        await app.state.orchestrator.aclose()

    app = FastAPI(title=settings.app_name, lifespan=lifespan)

    if orchestrator is not None:
        _ensure_runtime_state(app, settings=settings, orchestrator_override=orchestrator)

    def _get_orchestrator(request: Request) -> GenerationOrchestrator:
        if not hasattr(request.app.state, "orchestrator"):
            _ensure_runtime_state(
                request.app, settings=settings, orchestrator_override=orchestrator
            )
        return request.app.state.orchestrator

    @app.get("/health")
    def health() -> dict[str, str]:
        return {"status": "ok", "service": settings.app_name}

    @app.get("/modes")
    def modes() -> dict[str, list[dict[str, Any]]]:
        return {
            category: [mode.model_dump() for mode in items]
            for category, items in list_modes().items()
        }

    @app.post("/rounds", response_model=Round)
    async def create_round(
        payload: CreateRoundRequest, request: Request, wait: bool = False
    ) -> Round:
        service = _get_orchestrator(request)
        try:
            generation = service.build_request(
                payload.prompt,
                config_id=payload.config_id,
                prompt_image=payload.prompt_image,
                batch_size=payload.batch_size,
                ab_profile_id=payload.ab_profile_id,
            )
        except ValidationError as exc:
            raise HTTPException(status_code=422, detail=str(exc)) from exc

        if wait:
            return await service.generate(generation)
        return service.dispatch(generation)

    @app.get("/rounds", response_model=list[Round])
    def list_rounds(request: Request) -> list[Round]:
        return _get_orchestrator(request).store.list_rounds()

    @app.get("/rounds/{round_id}", response_model=Round)
    def get_round(round_id: str, request: Request) -> Round:
        record = _get_orchestrator(request).store.get_round(round_id)
        if record is None:
            raise HTTPException(status_code=404, detail="Round not found")
        return record

    @app.delete("/rounds/{round_id}")
    def delete_round(round_id: str, request: Request) -> dict[str, bool]:
        if not _get_orchestrator(request).remove_round(round_id):
            raise HTTPException(status_code=404, detail="Round not found")
        return {"removed": True}

    @app.post("/chat", response_model=ChatMessage)
    async def send_chat(payload: ChatRequest, request: Request, wait: bool = False) -> ChatMessage:
        service = _get_orchestrator(request)
        options = {
            "config_id": payload.config_id,
            "ab_profile_id": payload.ab_profile_id,
            "hybrid": payload.hybrid,
        }
        if wait:
            return await service.send_chat_message(payload.prompt, **options)
        return service.dispatch_chat(payload.prompt, **options)

    @app.get("/chat", response_model=list[ChatMessage])
    def list_chat(request: Request) -> list[ChatMessage]:
        return _get_orchestrator(request).store.list_chat()

    @app.post("/sessions/new")
    def new_session(request: Request) -> dict[str, list[str]]:
        entries = _get_orchestrator(request).store.start_new_session()
        return {"history_ids": [entry.id for entry in entries]}

    @app.get("/history", response_model=list[HistoryEntry])
    def history(request: Request) -> list[HistoryEntry]:
        return _get_orchestrator(request).store.list_history()

    @app.post("/history/{entry_id}/load")
    def load_history(entry_id: str, request: Request) -> dict[str, bool]:
        if not _get_orchestrator(request).store.load_history_session(entry_id):
            raise HTTPException(status_code=404, detail="History session not found")
        return {"loaded": True}

    @app.delete("/history/{entry_id}")
    def delete_history(entry_id: str, request: Request) -> dict[str, bool]:
        if not _get_orchestrator(request).store.delete_history_session(entry_id):
            raise HTTPException(status_code=404, detail="History session not found")
        return {"removed": True}

    def _profiles(request: Request) -> ProfileBook:
        return _get_orchestrator(request).catalog.profiles

    @app.get("/profiles", response_model=list[UserProfile])
    def list_profiles(request: Request) -> list[UserProfile]:
        return _profiles(request).list_profiles()

    @app.post("/profiles", response_model=UserProfile, status_code=201)
    def create_profile(request: Request, payload: dict[str, Any] = Body(...)) -> UserProfile:
        try:
            return _profiles(request).add_profile(payload)
        except ConfigurationError as exc:
            raise HTTPException(status_code=422, detail=str(exc)) from exc

    @app.post("/profiles/import", response_model=list[UserProfile], status_code=201)
    def import_profiles(
        request: Request, payload: dict[str, Any] | list[Any] = Body(...)
    ) -> list[UserProfile]:
        try:
            return _profiles(request).import_profiles(payload)
        except ConfigurationError as exc:
            raise HTTPException(status_code=422, detail=str(exc)) from exc

    @app.put("/profiles/{profile_id}", response_model=UserProfile)
    def update_profile(
        profile_id: str, request: Request, payload: dict[str, Any] = Body(...)
    ) -> UserProfile:
        book = _profiles(request)
        current = book.get_profile(profile_id)
        if current is None:
            raise HTTPException(status_code=404, detail="Profile not found")
        return book.update_profile(_merged(UserProfile, current, payload))

    @app.delete("/profiles/{profile_id}")
    def delete_profile(profile_id: str, request: Request) -> dict[str, bool]:
        book = _profiles(request)
        if book.get_profile(profile_id) is None:
            raise HTTPException(status_code=404, detail="Profile not found")
        book.delete_profile(profile_id)
        return {"removed": True}

    @app.get("/profiles/{profile_id}/export")
    def export_profile(profile_id: str, request: Request) -> Response:
        try:
            exported = _profiles(request).export_profile(profile_id)
        except KeyError as exc:
            raise HTTPException(status_code=404, detail="Profile not found") from exc
        return Response(content=exported, media_type="application/json")

    @app.get("/apis", response_model=list[ApiDefinition])
    def list_apis(request: Request) -> list[ApiDefinition]:
        return _profiles(request).list_apis()

    @app.post("/apis", response_model=ApiDefinition, status_code=201)
    def create_api(request: Request, payload: dict[str, Any] = Body(...)) -> ApiDefinition:
        try:
            return _profiles(request).add_api(payload)
        except ConfigurationError as exc:
            raise HTTPException(status_code=422, detail=str(exc)) from exc

    @app.put("/apis/{api_id}", response_model=ApiDefinition)
    def update_api(api_id: str, request: Request, payload: dict[str, Any] = Body(...)) -> ApiDefinition:
        book = _profiles(request)
        current = book.get_api(api_id)
        if current is None:
            raise HTTPException(status_code=404, detail="API definition not found")
        return book.update_api(_merged(ApiDefinition, current, payload))

    @app.delete("/apis/{api_id}")
    def delete_api(api_id: str, request: Request) -> dict[str, bool]:
        book = _profiles(request)
        if book.get_api(api_id) is None:
            raise HTTPException(status_code=404, detail="API definition not found")
        book.delete_api(api_id)
        return {"removed": True}

    @app.get("/code-files", response_model=list[CodeFile])
    def list_code_files(request: Request) -> list[CodeFile]:
        return _profiles(request).list_code_files()

    @app.post("/code-files", response_model=CodeFile, status_code=201)
    def create_code_file(request: Request, payload: dict[str, Any] = Body(...)) -> CodeFile:
        try:
            return _profiles(request).add_code_file(payload)
        except ConfigurationError as exc:
            raise HTTPException(status_code=422, detail=str(exc)) from exc

    @app.put("/code-files/{file_id}", response_model=CodeFile)
    def update_code_file(file_id: str, request: Request, payload: dict[str, Any] = Body(...)) -> CodeFile:
        book = _profiles(request)
        current = book.get_code_file(file_id)
        if current is None:
            raise HTTPException(status_code=404, detail="Code file not found")
        return book.update_code_file(_merged(CodeFile, current, payload))

    @app.delete("/code-files/{file_id}")
    def delete_code_file(file_id: str, request: Request) -> dict[str, bool]:
        book = _profiles(request)
        if book.get_code_file(file_id) is None:
            raise HTTPException(status_code=404, detail="Code file not found")
        book.delete_code_file(file_id)
        return {"removed": True}

    @app.post("/prompts/enhance")
    async def enhance_prompt(payload: EnhancePromptRequest, request: Request) -> dict[str, str]:
        try:
            enhanced = await _get_orchestrator(request).enhance_prompt(payload.prompt)
        except TransportError as exc:
            raise HTTPException(status_code=502, detail=str(exc)) from exc
        return {"prompt": enhanced}

    @app.post("/code/check")
    async def check_code(payload: CheckCodeRequest, request: Request) -> dict[str, str]:
        review = await _get_orchestrator(request).check_code(payload.code, payload.language)
        return {"review": review}

    return app


# Module-level app for `uvicorn vibecheck_orchestrator.api.main:app`.
app = create_app()
