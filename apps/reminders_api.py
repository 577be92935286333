import logging
import os
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import date
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, FastAPI, Header, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, ValidationError

from cache.reminder_cache import FamilyReminderCache
from config.settings import Settings, load_settings
from models.recurrence import RecurrenceRule
from models.reminder_item import NotificationPolicy, ReminderItem, ReminderUpdate
from observability.obs import span_attrs
from observability.telemetry import mark_error
from observability.timing import PerformanceMonitor
from shared.delivery_mng import DeliveryTransport, InMemoryDeliveryTransport
from shared.errors import PermissionDeniedError, ReminderError, ReminderNotFoundError
from shared.lifecycle import ReminderLifecycle, TransitionResult
from shared.notification_sync import NotificationSynchronizer
from shared.recurrence import generate_occurrences
from shared.time import Clock, system_clock
from store.base import FamilyProvider, ReminderStore

logger = logging.getLogger(__name__)

# Error codes -> HTTP status. Degraded successes are 200 with warnings.
STATUS_BY_CODE = {
    "invalid_rule": 422,
    "invalid_recurrence": 422,
    "invalid_transition": 409,
    "store_conflict": 409,
    "not_found": 404,
    "forbidden": 403,
    "transport_unavailable": 503,
}


@dataclass
class ReminderServices:
    store: ReminderStore
    family_provider: FamilyProvider
    transport: DeliveryTransport
    synchronizer: NotificationSynchronizer
    cache: FamilyReminderCache
    lifecycle: ReminderLifecycle
    settings: Settings


def build_services(settings: Settings, clock: Clock = system_clock) -> ReminderServices:
    """Pick the store implementation once, at construction; business logic never branches on it."""
    if settings.store_backend == "firestore":
        from db.base import get_db
        from store.delivery_mng_store import FirestoreDeliveryTransport
        from store.family_store import FirestoreFamilyProvider
        from store.reminder_item_store import FirestoreReminderStore

        cred_path = settings.firebase_credentials_path
        db = get_db(cred_path if os.path.exists(cred_path) else None)
        store: ReminderStore = FirestoreReminderStore(db, settings.reminders_collection, clock)
        family: FamilyProvider = FirestoreFamilyProvider(db, settings.family_members_collection)
        transport: DeliveryTransport = FirestoreDeliveryTransport(db, settings.notifications_collection, clock)
    else:
        from store.memory_store import InMemoryFamilyProvider, InMemoryReminderStore

        store = InMemoryReminderStore(clock)
        family = InMemoryFamilyProvider()
        transport = InMemoryDeliveryTransport()

    synchronizer = NotificationSynchronizer(transport, clock, timeout=settings.transport_timeout_seconds)
    cache = FamilyReminderCache(
        store,
        family,
        clock,
        ttl_seconds=settings.cache_ttl_seconds,
        page_size=settings.page_size,
        monitor=PerformanceMonitor(),
    )
    lifecycle = ReminderLifecycle(store, synchronizer, cache, clock)
    logger.info("[APP] services built (backend=%s)", settings.store_backend)
    return ReminderServices(store, family, transport, synchronizer, cache, lifecycle, settings)


# --- request bodies -------------------------------------------------------------------


class CreateReminderRequest(BaseModel):
    title: str
    description: Optional[str] = None
    due_date: date
    due_time: Optional[str] = None
    timezone: Optional[str] = None
    start_date: Optional[date] = None

    # either a structured rule ...
    recurrence: Optional[Dict[str, Any]] = None
    # ... or the fields older clients send
    repeat_pattern: Optional[str] = None
    custom_interval: Optional[int] = None
    custom_frequency_type: Optional[str] = None
    repeat_days: Optional[List[int]] = None
    recurring_end_date: Optional[str] = None
    recurring_end_after: Optional[int] = None

    notification_policy: Optional[NotificationPolicy] = None
    assigned_to: List[str] = Field(default_factory=list)
    family_id: Optional[str] = None
    shared_with_family: bool = False
    op_id: Optional[str] = None

    def rule(self) -> Optional[RecurrenceRule]:
        if self.recurrence is not None:
            return RecurrenceRule.parse(self.recurrence)
        if self.repeat_pattern and self.repeat_pattern != "none":
            return RecurrenceRule.from_repeat_pattern(
                self.repeat_pattern,
                custom_interval=self.custom_interval,
                repeat_days=self.repeat_days,
                custom_frequency_type=self.custom_frequency_type,
                recurring_end_date=self.recurring_end_date,
                recurring_end_after=self.recurring_end_after,
            )
        return None


class PreviewRequest(BaseModel):
    rule: Dict[str, Any]
    anchor_date: date
    max_count: int = Field(10, ge=1, le=366)
    until_date: Optional[date] = None


# --- helpers -------------------------------------------------------------------------


def _ok(data: Dict[str, Any]) -> JSONResponse:
    return JSONResponse(status_code=200, content={"ok": True, "code": None, "error": None, **data})


def _fail(status: int, code: str, message: str) -> JSONResponse:
    return JSONResponse(status_code=status, content={"ok": False, "code": code, "error": message})


def _transition(result: TransitionResult) -> JSONResponse:
    return _ok({
        "reminder": result.reminder.to_document(),
        "successor": result.successor.to_document() if result.successor else None,
        "scheduled": result.scheduled_count,
        "cancelled": result.cancelled_count,
        "degraded": result.degraded,
        "warnings": result.warnings,
    })


def _services(request: Request) -> ReminderServices:
    return request.app.state.services


async def _owned(services: ReminderServices, reminder_id: str, user_id: str, *, allow_assigned: bool = False) -> ReminderItem:
    item = await services.store.get_by_id(reminder_id)
    if item is None:
        raise ReminderNotFoundError(reminder_id)
    if item.user_id == user_id or (allow_assigned and user_id in item.assigned_to):
        return item
    raise PermissionDeniedError(user_id, reminder_id)


async def _owned_series(services: ReminderServices, series_id: str, user_id: str) -> List[ReminderItem]:
    items = await services.store.query_by_series(series_id)
    if not items:
        raise ReminderNotFoundError(series_id)
    for item in items:
        if item.user_id != user_id:
            raise PermissionDeniedError(user_id, item.item_id)
    return items


# --- routes ---------------------------------------------------------------------------

reminders_router = APIRouter()


@reminders_router.get("/")
def health_check():
    return JSONResponse(content={"status": "ok"}, status_code=200)


@reminders_router.post("/reminders")
async def create_reminder(body: CreateReminderRequest, request: Request, x_user_id: str = Header(...)):
    services = _services(request)
    with span_attrs("api.create_reminder", operation="http", route="/reminders", user_id=x_user_id):
        item = ReminderItem(
            user_id=x_user_id,
            title=body.title,
            description=body.description,
            due_date=body.due_date,
            due_time=body.due_time,
            timezone=body.timezone or services.settings.default_timezone,
            recurrence=body.rule(),
            notification_policy=body.notification_policy or NotificationPolicy(),
            assigned_to=body.assigned_to,
            family_id=body.family_id,
            shared_with_family=body.shared_with_family,
            op_id=body.op_id,
        )
        result = await services.lifecycle.create(item, start_date=body.start_date)
    return _transition(result)


@reminders_router.patch("/reminders/{reminder_id}")
async def update_reminder(
    reminder_id: str,
    body: ReminderUpdate,
    request: Request,
    x_user_id: str = Header(...),
    expected_version: Optional[int] = Query(None),
):
    services = _services(request)
    with span_attrs("api.update_reminder", operation="http", reminder_id=reminder_id):
        await _owned(services, reminder_id, x_user_id)
        result = await services.lifecycle.update(reminder_id, body, expected_version=expected_version)
    return _transition(result)


@reminders_router.post("/reminders/{reminder_id}/complete")
async def complete_reminder(
    reminder_id: str,
    request: Request,
    x_user_id: str = Header(...),
    expected_version: Optional[int] = Query(None),
):
    services = _services(request)
    with span_attrs("api.complete_reminder", operation="http", reminder_id=reminder_id):
        await _owned(services, reminder_id, x_user_id, allow_assigned=True)
        result = await services.lifecycle.complete(reminder_id, expected_version=expected_version)
    return _transition(result)


@reminders_router.delete("/reminders/{reminder_id}")
async def delete_reminder(reminder_id: str, request: Request, x_user_id: str = Header(...)):
    services = _services(request)
    with span_attrs("api.delete_reminder", operation="http", reminder_id=reminder_id):
        await _owned(services, reminder_id, x_user_id)
        result = await services.lifecycle.delete(reminder_id)
    return _transition(result)


@reminders_router.get("/reminders/{reminder_id}")
async def get_reminder(reminder_id: str, request: Request, x_user_id: str = Header(...)):
    item = await _owned(_services(request), reminder_id, x_user_id, allow_assigned=True)
    return _ok({"reminder": item.to_document()})


@reminders_router.get("/series/{series_id}")
async def get_series(series_id: str, request: Request, x_user_id: str = Header(...)):
    items = await _owned_series(_services(request), series_id, x_user_id)
    return _ok({"series_id": series_id, "items": [r.to_document() for r in items]})


@reminders_router.delete("/series/{series_id}")
async def delete_series(series_id: str, request: Request, x_user_id: str = Header(...)):
    services = _services(request)
    with span_attrs("api.delete_series", operation="http", series_id=series_id):
        await _owned_series(services, series_id, x_user_id)
        result = await services.lifecycle.delete_series(series_id)
    return _ok({
        "series_id": series_id,
        "deleted": result.deleted,
        "failed": result.failed,
        "cancelled": result.cancelled_count,
        "degraded": result.degraded,
        "warnings": result.warnings,
    })


async def _page(request: Request, user_id: str, family_id: Optional[str], page: int, use_cache: bool) -> JSONResponse:
    services = _services(request)
    result = await services.cache.get(user_id, family_id, page, use_cache=use_cache)
    return _ok({
        "items": [r.to_document() for r in result.items],
        "has_more": result.has_more,
        "total_count": result.total_count,
        "page": page,
    })


@reminders_router.get("/reminders")
async def list_reminders(
    request: Request,
    x_user_id: str = Header(...),
    page: int = Query(0, ge=0),
    use_cache: bool = Query(True),
):
    return await _page(request, x_user_id, None, page, use_cache)


@reminders_router.get("/families/{family_id}/reminders")
async def list_family_reminders(
    family_id: str,
    request: Request,
    x_user_id: str = Header(...),
    page: int = Query(0, ge=0),
    use_cache: bool = Query(True),
):
    return await _page(request, x_user_id, family_id, page, use_cache)


@reminders_router.post("/cache/invalidate")
async def invalidate_cache(request: Request, x_user_id: str = Header(...)):
    """Pull-to-refresh."""
    _services(request).cache.invalidate(x_user_id)
    return _ok({"user_id": x_user_id})


@reminders_router.post("/families/{family_id}/membership-changed")
async def membership_changed(family_id: str, request: Request):
    await _services(request).cache.on_membership_changed(family_id)
    return _ok({"family_id": family_id})


@reminders_router.get("/cache/stats")
async def cache_stats(request: Request):
    return _ok({"stats": _services(request).cache.stats()})


@reminders_router.post("/recurrence/preview")
async def preview_recurrence(body: PreviewRequest):
    rule = RecurrenceRule.parse(body.rule)
    dates = generate_occurrences(rule, body.anchor_date, body.max_count, body.until_date)
    return _ok({"description": rule.describe(), "occurrences": [d.isoformat() for d in dates]})


# --- app -------------------------------------------------------------------------------


async def _reminder_error(request: Request, exc: ReminderError) -> JSONResponse:
    status = STATUS_BY_CODE.get(exc.code, 400)
    mark_error(exc, kind=exc.code)
    logger.info("[APP] %s %s rejected: %s (%s)", request.method, request.url.path, exc.code, exc)
    return _fail(status, exc.code, str(exc))


async def _validation_error(request: Request, exc: ValidationError) -> JSONResponse:
    return _fail(422, "invalid_request", str(exc))


def create_app(settings: Optional[Settings] = None, services: Optional[ReminderServices] = None) -> FastAPI:
    settings = settings or (services.settings if services else load_settings())
    logging.basicConfig(level=getattr(logging, settings.log_level, logging.INFO))

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        app.state.services = services or build_services(settings)
        app.state.services.cache.init()
        try:
            yield
        finally:
            app.state.services.cache.dispose()

    app = FastAPI(lifespan=lifespan)
    app.add_exception_handler(ReminderError, _reminder_error)
    app.add_exception_handler(ValidationError, _validation_error)
    app.include_router(reminders_router)
    return app


app = create_app()
