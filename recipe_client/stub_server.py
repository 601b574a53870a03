"""
Backend de referencia en memoria (FastAPI) con la misma superficie REST que
consume el cliente. Sirve para desarrollo local y para los tests:

    uvicorn recipe_client.stub_server:app --reload
"""
from __future__ import annotations

import uuid
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from http import HTTPStatus
from typing import Deque, Dict, List, Optional, Set

from fastapi import APIRouter, FastAPI, Header, HTTPException, Query, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, PlainTextResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from pydantic import Field

from .config import Settings, settings as default_settings
from .schemas import CamelModel, RecipeRequest, UploadTokenRequest

PROBLEM_JSON = "application/problem+json"
DEV_USER_ID = "dev-user"


class RecipeOut(CamelModel):
    id: str
    title: str
    instructions: Optional[str] = None
    servings: int
    category: Optional[str] = None
    image_url: Optional[str] = None
    created_at: datetime
    user_id: str


class UploadTokenOut(CamelModel):
    upload_url: str
    public_url: str
    expires_at: datetime


class ProblemOut(CamelModel):
    type: str = Field(default="about:blank")
    title: str
    status: int
    detail: Optional[str] = None
    instance: Optional[str] = None


def problem_response(status: int, detail: Optional[str] = None, instance: Optional[str] = None, **extra) -> JSONResponse:
    body = ProblemOut(title=HTTPStatus(status).phrase, status=status, detail=detail, instance=instance).model_dump(exclude_none=True)
    body.update(extra)
    return JSONResponse(status_code=status, content=body, media_type=PROBLEM_JSON)


@dataclass
class Fault:
    status: int
    methods: Optional[Set[str]] = None
    as_problem: bool = True


class RecipeStore:
    """Almacén en memoria + inyección de fallos para los tests."""

    def __init__(self) -> None:
        self.recipes: Dict[str, RecipeOut] = {}
        self.blobs: Dict[str, bytes] = {}
        self.faults: Deque[Fault] = deque()
        self.calls: List[str] = []
        self.next_ids: Deque[str] = deque()

    def seed(self, **fields) -> RecipeOut:
        recipe = RecipeOut(
            id=fields.pop("id", None) or (self.next_ids.popleft() if self.next_ids else str(uuid.uuid4())),
            created_at=fields.pop("created_at", None) or datetime.now(timezone.utc),
            user_id=fields.pop("user_id", DEV_USER_ID),
            **fields,
        )
        self.recipes[recipe.id] = recipe
        return recipe

    def fail_next(self, status: int, times: int = 1, methods: Optional[Set[str]] = None, as_problem: bool = True) -> None:
        for _ in range(times):
            self.faults.append(Fault(status=status, methods=methods, as_problem=as_problem))

    def take_fault(self, method: str) -> Optional[Fault]:
        if self.faults and (self.faults[0].methods is None or method in self.faults[0].methods):
            return self.faults.popleft()
        return None

    def count(self, call: str) -> int:
        return sum(1 for c in self.calls if c == call)


def _recipes_router(store: RecipeStore, prefix: str) -> APIRouter:
    router = APIRouter(prefix=prefix, tags=["recipes"])

    def _get(recipe_id: str) -> RecipeOut:
        recipe = store.recipes.get(recipe_id)
        if recipe is None:
            raise HTTPException(status_code=404, detail=f"Recipe {recipe_id} not found")
        return recipe

    @router.get("", response_model=List[RecipeOut], response_model_by_alias=True)
    def list_recipes(
        category: Optional[str] = None,
        limit: Optional[int] = Query(default=None),
    ):
        if limit is not None and limit <= 0:
            raise HTTPException(status_code=400, detail="Limit must be greater than zero")
        rows = sorted(store.recipes.values(), key=lambda r: r.created_at, reverse=True)
        if category:
            rows = [r for r in rows if r.category == category]
        return rows[:limit] if limit else rows

    @router.get("/search", response_model=List[RecipeOut], response_model_by_alias=True)
    def search_recipes(title: str = Query(min_length=1)):
        needle = title.lower()
        rows = [r for r in store.recipes.values() if needle in r.title.lower()]
        return sorted(rows, key=lambda r: r.created_at, reverse=True)

    @router.get("/{recipe_id}", response_model=RecipeOut, response_model_by_alias=True)
    def get_recipe(recipe_id: str):
        return _get(recipe_id)

    @router.post("", response_model=RecipeOut, response_model_by_alias=True, status_code=201)
    def create_recipe(data: RecipeRequest):
        return store.seed(**data.model_dump(mode="json"))

    @router.put("/{recipe_id}", response_model=RecipeOut, response_model_by_alias=True)
    def update_recipe(recipe_id: str, data: RecipeRequest):
        current = _get(recipe_id)
        updated = current.model_copy(update=data.model_dump(mode="json"))
        store.recipes[recipe_id] = updated
        return updated

    @router.delete("/{recipe_id}", status_code=204)
    def delete_recipe(recipe_id: str):
        _get(recipe_id)
        del store.recipes[recipe_id]
        return Response(status_code=204)

    return router


def _images_router(store: RecipeStore, prefix: str) -> APIRouter:
    router = APIRouter(tags=["images"])

    @router.post(prefix + "/upload-token", response_model=UploadTokenOut, response_model_by_alias=True)
    def upload_token(data: UploadTokenRequest, request: Request):
        if not data.content_type.startswith("image/"):
            raise HTTPException(status_code=400, detail="Only image uploads are allowed")
        blob = f"{uuid.uuid4().hex}-{data.file_name}"
        public_url = str(request.base_url).rstrip("/") + f"/blobs/{blob}"
        return UploadTokenOut(
            upload_url=f"{public_url}?sig=dev",
            public_url=public_url,
            expires_at=datetime.now(timezone.utc) + timedelta(minutes=15),
        )

    @router.put("/blobs/{blob}", status_code=201)
    async def put_blob(blob: str, request: Request, x_ms_blob_type: Optional[str] = Header(default=None)):
        if x_ms_blob_type != "BlockBlob":
            raise HTTPException(status_code=400, detail="x-ms-blob-type must be BlockBlob")
        store.blobs[blob] = await request.body()
        return Response(status_code=201)

    return router


def install_problem_handlers(app: FastAPI) -> None:
    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        return problem_response(exc.status_code, str(exc.detail), instance=request.url.path)

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        errors: Dict[str, List[str]] = {}
        for err in exc.errors():
            field = ".".join(str(p) for p in err.get("loc", ())[1:]) or "body"
            errors.setdefault(field, []).append(err.get("msg", "invalid"))
        return problem_response(400, "One or more validation errors occurred.", instance=request.url.path, errors=errors)


def create_app(store: Optional[RecipeStore] = None, cfg: Optional[Settings] = None) -> FastAPI:
    cfg = cfg or default_settings
    store = store or RecipeStore()
    app = FastAPI(title="Recipe stub API", version="0.1.0")
    app.state.store = store

    @app.middleware("http")
    async def record_and_inject_faults(request: Request, call_next):
        store.calls.append(f"{request.method} {request.url.path}")
        fault = store.take_fault(request.method)
        if fault is not None:
            if fault.as_problem:
                return problem_response(fault.status, "Injected failure", instance=request.url.path)
            return PlainTextResponse(HTTPStatus(fault.status).phrase, status_code=fault.status)
        return await call_next(request)

    install_problem_handlers(app)
    app.include_router(_recipes_router(store, cfg.recipes_endpoint))
    app.include_router(_images_router(store, cfg.images_endpoint))

    @app.get("/health", tags=["admin"])
    async def health():
        return {"status": "ok", "recipes": len(store.recipes)}

    return app


app = create_app()
