import logging
from typing import Annotated

from fastapi import APIRouter, FastAPI, Path, Query, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from . import repo, search, service
from .db import init_db
from .errors import NotFoundError, SearchBackendError, ValidationError
from .log import setup_logging
from .logic import MAX_INT64, amount_to_cents
from .pagination import pagination_headers, resolve_page_request
from .schemas import (
    BankAccountIn,
    BankAccountOut,
    LabelIn,
    LabelOut,
    OperationIn,
    OperationOut,
)
from .settings import Settings, get_settings

logger = logging.getLogger(__name__)

ENTITY_NAME = "operation"

# entity named in error headers, by route prefix
_ENTITY_BY_PREFIX = {
    "/api/bank-accounts": "bankAccount",
    "/api/labels": "label",
}

# path ids must fit a sqlite INTEGER
EntityId = Annotated[int, Path(ge=-MAX_INT64 - 1, le=MAX_INT64)]

router = APIRouter(prefix="/api")


def _settings(request: Request) -> Settings:
    return request.app.state.settings


def _alert_headers(settings: Settings, action: str, param, entity: str = ENTITY_NAME) -> dict:
    return {
        f"X-{settings.app_name}-alert": f"{settings.app_name}.{entity}.{action}",
        f"X-{settings.app_name}-params": str(param),
    }


def _write_headers(response: Response, settings: Settings, action: str, result) -> None:
    param = result.operation.id if result.operation is not None else ""
    response.headers.update(_alert_headers(settings, action, param))
    if result.index_warning:
        response.headers[f"X-{settings.app_name}-warning"] = result.index_warning


def _page_params(settings: Settings, page: int, size: int | None):
    return resolve_page_request(
        page,
        size,
        default_size=settings.default_page_size,
        max_size=settings.max_page_size,
    )


@router.post("/operations", response_model=OperationOut, status_code=201)
def create_operation(body: OperationIn, request: Request, response: Response):
    logger.debug("REST request to save Operation : %s", body)
    settings = _settings(request)
    result = service.create_operation(settings, body.to_domain())
    response.headers["Location"] = f"/api/operations/{result.operation.id}"
    _write_headers(response, settings, "created", result)
    return OperationOut.from_domain(result.operation)


@router.put("/operations/{operation_id}", response_model=OperationOut)
def update_operation(operation_id: EntityId, body: OperationIn, request: Request, response: Response):
    logger.debug("REST request to update Operation : %s, %s", operation_id, body)
    settings = _settings(request)
    try:
        result = service.update_operation(settings, operation_id, body.to_domain())
    except NotFoundError as exc:
        raise ValidationError(str(exc), exc.error_key) from exc
    _write_headers(response, settings, "updated", result)
    return OperationOut.from_domain(result.operation)


@router.patch("/operations/{operation_id}", response_model=OperationOut)
def partial_update_operation(
    operation_id: EntityId, body: OperationIn, request: Request, response: Response
):
    logger.debug("REST request to partial update Operation : %s, %s", operation_id, body)
    settings = _settings(request)
    try:
        result = service.partial_update_operation(settings, operation_id, body.to_domain())
    except NotFoundError as exc:
        raise ValidationError(str(exc), exc.error_key) from exc
    _write_headers(response, settings, "updated", result)
    return OperationOut.from_domain(result.operation)


@router.get("/operations", response_model=list[OperationOut])
def list_operations(
    request: Request,
    response: Response,
    page: int = 0,
    size: int | None = None,
    sort: list[str] = Query(default=[]),
    eagerload: bool = True,
):
    logger.debug("REST request to get a page of Operations")
    settings = _settings(request)
    page, size = _page_params(settings, page, size)
    include = repo.RELATIONS if eagerload else frozenset()
    result = repo.list_operations(
        settings.db_path, page=page, size=size, sort=sort, include=include
    )
    response.headers.update(pagination_headers(str(request.url), result))
    return [OperationOut.from_domain(operation) for operation in result.items]


@router.get("/operations/_search", response_model=list[OperationOut])
def search_operations(
    request: Request,
    response: Response,
    query: str,
    page: int = 0,
    size: int | None = None,
    sort: list[str] = Query(default=[]),
):
    logger.debug("REST request to search for a page of Operations for query %s", query)
    settings = _settings(request)
    page, size = _page_params(settings, page, size)
    result = search.search_operations(
        settings.index_path, query, page=page, size=size, sort=sort or None
    )
    response.headers.update(pagination_headers(str(request.url), result))
    return [OperationOut.from_domain(operation) for operation in result.items]


@router.get("/operations/{operation_id}", response_model=OperationOut)
def get_operation(operation_id: EntityId, request: Request):
    logger.debug("REST request to get Operation : %s", operation_id)
    operation = repo.get_operation(
        _settings(request).db_path, operation_id, include=repo.RELATIONS
    )
    return OperationOut.from_domain(operation)


@router.delete("/operations/{operation_id}", status_code=204)
def delete_operation(operation_id: EntityId, request: Request):
    logger.debug("REST request to delete Operation : %s", operation_id)
    settings = _settings(request)
    result = service.delete_operation(settings, operation_id)
    response = Response(status_code=204)
    response.headers.update(_alert_headers(settings, "deleted", operation_id))
    if result.index_warning:
        response.headers[f"X-{settings.app_name}-warning"] = result.index_warning
    return response


@router.post("/bank-accounts", response_model=BankAccountOut, status_code=201)
def create_bank_account(body: BankAccountIn, request: Request, response: Response):
    settings = _settings(request)
    account_id = repo.create_bank_account(
        settings.db_path, body.name, amount_to_cents(body.balance)
    )
    response.headers["Location"] = f"/api/bank-accounts/{account_id}"
    response.headers.update(_alert_headers(settings, "created", account_id, "bankAccount"))
    return BankAccountOut.from_domain(repo.get_bank_account(settings.db_path, account_id))


@router.get("/bank-accounts", response_model=list[BankAccountOut])
def list_bank_accounts(request: Request):
    return [
        BankAccountOut.from_domain(account)
        for account in repo.list_bank_accounts(_settings(request).db_path)
    ]


@router.get("/bank-accounts/{account_id}", response_model=BankAccountOut)
def get_bank_account(account_id: EntityId, request: Request):
    account = repo.get_bank_account(_settings(request).db_path, account_id)
    if account is None:
        raise NotFoundError(f"bank account {account_id} not found")
    return BankAccountOut.from_domain(account)


@router.post("/labels", response_model=LabelOut, status_code=201)
def create_label(body: LabelIn, request: Request, response: Response):
    settings = _settings(request)
    label_id = repo.create_label(settings.db_path, body.label)
    response.headers["Location"] = f"/api/labels/{label_id}"
    response.headers.update(_alert_headers(settings, "created", label_id, "label"))
    return LabelOut.from_domain(repo.get_label(settings.db_path, label_id))


@router.get("/labels", response_model=list[LabelOut])
def list_labels(request: Request):
    return [LabelOut.from_domain(label) for label in repo.list_labels(_settings(request).db_path)]


@router.get("/labels/{label_id}", response_model=LabelOut)
def get_label(label_id: EntityId, request: Request):
    label = repo.get_label(_settings(request).db_path, label_id)
    if label is None:
        raise NotFoundError(f"label {label_id} not found")
    return LabelOut.from_domain(label)


def _entity_for(path: str) -> str:
    for prefix, entity in _ENTITY_BY_PREFIX.items():
        if path == prefix or path.startswith(prefix + "/"):
            return entity
    return ENTITY_NAME


def _problem(request: Request, status: int, title: str, detail: str, error_key: str) -> JSONResponse:
    app_name = _settings(request).app_name
    return JSONResponse(
        status_code=status,
        content={"title": title, "status": status, "detail": detail, "errorKey": error_key},
        headers={
            f"X-{app_name}-error": f"error.{error_key}",
            f"X-{app_name}-params": _entity_for(request.url.path),
        },
    )


async def _validation_error(request: Request, exc: ValidationError):
    return _problem(request, 400, "Bad Request", str(exc), exc.error_key)


async def _not_found(request: Request, exc: NotFoundError):
    return _problem(request, 404, "Not Found", str(exc), exc.error_key)


async def _search_backend_error(request: Request, exc: SearchBackendError):
    logger.warning("Search request failed: %s", exc)
    title = "Bad Request" if exc.status_code == 400 else "Service Unavailable"
    return _problem(request, exc.status_code, title, str(exc), exc.error_key)


async def _request_validation_error(request: Request, exc: RequestValidationError):
    detail = "; ".join(
        f"{'.'.join(str(part) for part in error['loc'])}: {error['msg']}"
        for error in exc.errors()
    )
    return _problem(request, 400, "Bad Request", detail, "invalidrequest")


def create_app(settings: Settings | None = None) -> FastAPI:
    """Build the application. Serve with ``uvicorn opledger.main:create_app --factory``."""
    settings = settings or get_settings()
    setup_logging(settings.log_level)
    init_db(settings)
    try:
        search.init_index(settings.index_path)
    except SearchBackendError as exc:
        logger.warning("Search index unavailable at startup: %s", exc)

    app = FastAPI(title=settings.app_name)
    app.state.settings = settings
    app.include_router(router)
    app.add_exception_handler(ValidationError, _validation_error)
    app.add_exception_handler(NotFoundError, _not_found)
    app.add_exception_handler(SearchBackendError, _search_backend_error)
    app.add_exception_handler(RequestValidationError, _request_validation_error)
    return app
